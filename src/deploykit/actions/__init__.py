"""Actions package - things the CLI does with a target."""

from deploykit.actions.diagnose import DiagnoseAction
from deploykit.actions.render import RenderAction
from deploykit.actions.report import ActionContract, ReportAction

__all__ = ["ActionContract", "DiagnoseAction", "RenderAction", "ReportAction"]
