"""Plan package - steps, templates and the plan builder."""

from deploykit.plan.builder import Plan, PlanBuilder
from deploykit.plan.steps import CommandStep, FileStep, Step, SymlinkStep, UploadStep
from deploykit.plan.templates import TemplateRenderer

__all__ = [
    "CommandStep",
    "FileStep",
    "Plan",
    "PlanBuilder",
    "Step",
    "SymlinkStep",
    "TemplateRenderer",
    "UploadStep",
]
