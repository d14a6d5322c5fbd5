"""Scripted dataload workflow.

The run is an ordered list of named steps. Each step gets the shared
WorkflowContext, logs in and out through SessionClient.session() so a
failing step still releases its session, and hands tokens to later steps
through the context. The first failure aborts the run; both daemons are
stopped afterwards no matter how the run ended.
"""
from __future__ import annotations

import errno
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .client import SessionClient
from .config import Config, Credentials
from .datagen import InvoiceFile, create_invoice_file, generate_random_string
from .errors import APIError, ConfigError, WorkflowAssertionError
from .supervisor import ProcessSpec, ProcessSupervisor

logger = logging.getLogger(__name__)

POLITEIAD = "politeiad"
CMSWWW = "cmswww"

INVOICE_RECORD_COUNT = 5
APPROVE_PERIOD = (9, 2018)
REJECT_PERIOD = (10, 2018)
RANDOM_FIELD_LENGTH = 16


@dataclass
class WorkflowContext:
    """State carried from one step to the next within a run."""
    config: Config
    client: SessionClient
    supervisor: ProcessSupervisor
    tokens: Dict[str, str] = field(default_factory=dict)
    invoices: Dict[str, InvoiceFile] = field(default_factory=dict)
    completed: List[str] = field(default_factory=list)

    def put_token(self, key: str, token: str) -> None:
        if not token:
            raise WorkflowAssertionError(f"Empty {key} token returned by the service")
        if key in self.tokens:
            raise WorkflowAssertionError(f"A {key} token is already pending")
        self.tokens[key] = token

    def take_token(self, key: str) -> str:
        """Consume a token; each token is handed out once."""
        try:
            return self.tokens.pop(key)
        except KeyError:
            raise WorkflowAssertionError(f"No {key} token available; run the step that issues it first") from None


@dataclass(frozen=True)
class Step:
    name: str
    action: Callable[[WorkflowContext], None]
    description: str = ""
    optional: bool = False
    only_if: Optional[Callable[[Config], bool]] = None


def _remove_tree(path: str) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    else:
        logger.info(f"Removed {path}")


def _remove_quietly(path: str) -> None:
    """Remove a file or directory, logging instead of failing."""
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except OSError as e:
        if e.errno != errno.ENOENT:
            logger.warning(f"Could not remove {path}: {e}")


# ---- steps ----------------------------------------------------------------

def delete_existing_data(ctx: WorkflowContext) -> None:
    cfg = ctx.config
    logger.info("Deleting existing data")
    _remove_tree(cfg.politeiad_data_dir)
    _remove_quietly(os.path.join(cfg.cmswww_data_dir, "sessions"))
    _remove_quietly(os.path.join(cfg.cmswww_data_dir, "csrf.key"))
    ctx.supervisor.run_tool(list(cfg.dbutil_cmd) + ["-deletealldata"])
    _remove_quietly(cfg.cli_home_dir)


def create_admin_user(ctx: WorkflowContext) -> None:
    admin = ctx.config.admin
    ctx.supervisor.run_tool(
        list(ctx.config.dbutil_cmd) + ["-createadmin", admin.email, admin.username, admin.password]
    )
    logger.info(f"Created admin user {admin.username} <{admin.email}>")


def start_politeiad(ctx: WorkflowContext) -> None:
    ctx.supervisor.start(POLITEIAD)


def start_cmswww(ctx: WorkflowContext) -> None:
    ctx.supervisor.start(CMSWWW)
    # the version call hands out the CSRF token for later POSTs
    ctx.client.version()


def _set_new_identity(ctx: WorkflowContext, creds: Credentials) -> None:
    with ctx.client.session(creds.email, creds.password):
        ctx.client.create_identity()


def admin_identity(ctx: WorkflowContext) -> None:
    _set_new_identity(ctx, ctx.config.admin)


def invite_contractor(ctx: WorkflowContext) -> None:
    admin = ctx.config.admin
    contractor = ctx.config.contractor
    with ctx.client.session(admin.email, admin.password):
        ctx.client.invite_user(contractor.email)
        ctx.put_token("invite", ctx.client.resend_invite(contractor.email))


def register_contractor(ctx: WorkflowContext) -> None:
    cfg = ctx.config
    ctx.client.register_user(
        cfg.contractor.email,
        cfg.contractor.username,
        cfg.contractor.password,
        cfg.contractor_name or generate_random_string(RANDOM_FIELD_LENGTH),
        cfg.contractor_location or generate_random_string(RANDOM_FIELD_LENGTH),
        cfg.contractor_extended_public_key or generate_random_string(RANDOM_FIELD_LENGTH),
        ctx.take_token("invite"),
    )


def contractor_identity(ctx: WorkflowContext) -> None:
    _set_new_identity(ctx, ctx.config.contractor)


def _submit_invoice(ctx: WorkflowContext, key: str, month: int, year: int) -> None:
    invoice = create_invoice_file(ctx.config.data_dir, month, year, INVOICE_RECORD_COUNT)
    ctx.invoices[key] = invoice
    contractor = ctx.config.contractor
    with ctx.client.session(contractor.email, contractor.password):
        token = ctx.client.submit_invoice(invoice)
    ctx.put_token(key, token)


def submit_invoice_to_approve(ctx: WorkflowContext) -> None:
    _submit_invoice(ctx, "approve", *APPROVE_PERIOD)


def approve_invoice(ctx: WorkflowContext) -> None:
    admin = ctx.config.admin
    token = ctx.take_token("approve")
    with ctx.client.session(admin.email, admin.password):
        ctx.client.approve_invoice(token)


def submit_invoice_to_reject(ctx: WorkflowContext) -> None:
    _submit_invoice(ctx, "reject", *REJECT_PERIOD)


def reject_invoice(ctx: WorkflowContext) -> None:
    admin = ctx.config.admin
    token = ctx.take_token("reject")
    with ctx.client.session(admin.email, admin.password):
        ctx.client.reject_invoice(token)


def check_password_reset_and_change(ctx: WorkflowContext) -> None:
    """Reset to a random password, then change back to the original."""
    admin = ctx.config.admin
    client = ctx.client
    new_password = generate_random_string(RANDOM_FIELD_LENGTH)

    client.reset_password(admin.email, new_password)

    try:
        client.login(admin.email, admin.password)
    except APIError as e:
        # any 4xx means the old password was refused
        if e.status_code is None or not 400 <= e.status_code < 500:
            raise
    else:
        client.logout()
        raise WorkflowAssertionError("Old password still works after the reset")

    with client.session(admin.email, new_password):
        client.change_password(new_password, admin.password)

    with client.session(admin.email, admin.password):
        pass


def check_edit_user(ctx: WorkflowContext) -> None:
    """Change every profile field, check it, then put the originals back."""
    contractor = ctx.config.contractor
    client = ctx.client
    with client.session(contractor.email, contractor.password) as session:
        original = client.user_details(session.user_id)

        replacement = {
            "name": generate_random_string(RANDOM_FIELD_LENGTH),
            "location": generate_random_string(RANDOM_FIELD_LENGTH),
            "extended_public_key": generate_random_string(RANDOM_FIELD_LENGTH),
        }
        client.edit_user(**replacement)

        edited = client.user_details(session.user_id).profile()
        for key, value in replacement.items():
            if edited[key] != value:
                raise WorkflowAssertionError(f"User's {key.replace('_', ' ')} was not modified")

        client.edit_user(**original.profile())
        restored = client.user_details(session.user_id).profile()
        if restored != original.profile():
            changed = sorted(k for k in restored if restored[k] != original.profile()[k])
            raise WorkflowAssertionError(f"User's profile was not restored: {', '.join(changed)}")


DEFAULT_STEPS: List[Step] = [
    Step("delete-data", delete_existing_data, "Wipe daemon data, sessions and the CLI home",
         only_if=lambda cfg: cfg.delete_data),
    Step("create-admin", create_admin_user, "Create the admin account with the DB utility"),
    Step("start-politeiad", start_politeiad, "Start politeiad and wait for it"),
    Step("start-cmswww", start_cmswww, "Start cmswww and wait for it"),
    Step("admin-identity", admin_identity, "Create and verify an admin identity"),
    Step("invite-contractor", invite_contractor, "Invite the contractor"),
    Step("register-contractor", register_contractor, "Register the contractor from the invite"),
    Step("contractor-identity", contractor_identity, "Create and verify a contractor identity"),
    Step("submit-invoice-to-approve", submit_invoice_to_approve, "Submit the 2018-09 invoice"),
    Step("approve-invoice", approve_invoice, "Approve the 2018-09 invoice"),
    Step("submit-invoice-to-reject", submit_invoice_to_reject, "Submit the 2018-10 invoice"),
    Step("reject-invoice", reject_invoice, "Reject the 2018-10 invoice"),
    Step("test-password-reset", check_password_reset_and_change,
         "Reset and change back the admin password", optional=True),
    Step("test-edit-user", check_edit_user,
         "Edit and restore the contractor profile", optional=True),
]


def build_supervisor(config: Config) -> ProcessSupervisor:
    return ProcessSupervisor(
        [
            ProcessSpec(POLITEIAD, config.politeiad_cmd, config.politeiad_log_file),
            ProcessSpec(CMSWWW, config.cmswww_cmd, config.cmswww_log_file),
        ],
        readiness_marker=config.readiness_marker,
        readiness_timeout=config.readiness_timeout,
    )


def build_client(config: Config) -> SessionClient:
    return SessionClient(
        config.api_url,
        home_dir=config.cli_home_dir,
        timeout=config.http_timeout,
        verify_tls=config.verify_tls,
    )


class WorkflowOrchestrator:
    """Runs the dataload steps in order and always tears the daemons down."""

    def __init__(self, config: Config, client: Optional[SessionClient] = None,
                 supervisor: Optional[ProcessSupervisor] = None,
                 steps: Optional[Iterable[Step]] = None):
        self.config = config
        self.client = client or build_client(config)
        self.supervisor = supervisor or build_supervisor(config)
        self.steps: List[Step] = list(steps if steps is not None else DEFAULT_STEPS)
        self.context = WorkflowContext(config=config, client=self.client,
                                       supervisor=self.supervisor)

        names = [step.name for step in self.steps]
        if len(set(names)) != len(names):
            raise ConfigError("Step names must be unique")
        unknown = sorted(set(config.skip_steps) - set(names))
        if unknown:
            raise ConfigError(f"Unknown step(s) to skip: {', '.join(unknown)}")

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def get_step(self, name: str) -> Step:
        for step in self.steps:
            if step.name == name:
                return step
        raise ConfigError(f"Unknown step: {name}")

    def selected_steps(self) -> List[Step]:
        """Steps a run will execute, after flags and skips are applied."""
        selected = []
        for step in self.steps:
            if step.name in self.config.skip_steps:
                continue
            if step.optional and not self.config.include_tests:
                continue
            if step.only_if is not None and not step.only_if(self.config):
                continue
            selected.append(step)
        return selected

    def run_step(self, name: str) -> None:
        step = self.get_step(name)
        logger.info(f"Step {step.name}: {step.description or step.action.__name__}")
        step.action(self.context)
        self.context.completed.append(step.name)

    def teardown(self) -> None:
        self.supervisor.stop_all()

    def run(self) -> WorkflowContext:
        """Run every selected step; stop both daemons afterwards."""
        try:
            for step in self.selected_steps():
                self.run_step(step.name)
        finally:
            self.teardown()
            self.client.close()
        logger.info(f"Completed {len(self.context.completed)} steps")
        return self.context
