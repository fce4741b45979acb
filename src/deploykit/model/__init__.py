"""Model package - Declarative target state for deploykit."""

from deploykit.model.target import (
    AppSpec,
    DomainSpec,
    ProcessManager,
    Runtime,
    TargetState,
    TLSSpec,
    load_target,
)

__all__ = [
    "AppSpec",
    "DomainSpec",
    "ProcessManager",
    "Runtime",
    "TargetState",
    "TLSSpec",
    "load_target",
]
