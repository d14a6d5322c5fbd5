"""Provision a cmswww test environment and drive the contractor workflow."""

from .client import Session, SessionClient, UserDetails
from .config import Config, Credentials, load_config
from .datagen import InvoiceFile, InvoiceRecord, create_invoice_file, generate_random_string
from .identity import Identity
from .supervisor import ProcessSpec, ProcessSupervisor
from .workflow import DEFAULT_STEPS, Step, WorkflowContext, WorkflowOrchestrator

__version__ = "1.0.0"

__all__ = [
    "Config",
    "Credentials",
    "DEFAULT_STEPS",
    "Identity",
    "InvoiceFile",
    "InvoiceRecord",
    "ProcessSpec",
    "ProcessSupervisor",
    "Session",
    "SessionClient",
    "Step",
    "UserDetails",
    "WorkflowContext",
    "WorkflowOrchestrator",
    "create_invoice_file",
    "generate_random_string",
    "load_config",
]
