"""Pull request / review app lifecycle.

Review app status is persisted in the parameter store as JSON, one record
per pipeline and pull request. Webhook events move the status forward; only a
review app in the ``created`` state lets the pipeline run past prebuild.

Target status, first matching rule wins:

==========================================  ==========
explicit create request                     created
PULL_REQUEST_CREATED / PULL_REQUEST_REOPENED  open
PULL_REQUEST_MERGED                         merged
PULL_REQUEST_CLOSED                         closed
anything else, no record                    open
anything else, record exists                (unchanged)
==========================================  ==========
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from appbuilder.types import (
    AppBuilderError,
    ParameterNotFoundError,
    PRStatus,
    StackNotFoundError,
    WebhookEvent,
)

if TYPE_CHECKING:
    from appbuilder.builds.context import BuildContext
    from appbuilder.builds.state import FileState
    from appbuilder.ports import ParameterStore, StackService

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({PRStatus.MERGED, PRStatus.CLOSED})

EXPLICIT_EVENTS = frozenset(
    {
        WebhookEvent.CREATED.value,
        WebhookEvent.REOPENED.value,
        WebhookEvent.MERGED.value,
        WebhookEvent.CLOSED.value,
    }
)


class ReviewAppError(AppBuilderError):
    """Raised when review app handling fails."""

    def __init__(self, message: str, code: str = "review_app_error") -> None:
        super().__init__(message, code)


@dataclass
class ReviewAppStatus:
    """Persisted review app record."""

    pull_request: str
    status: str

    def to_json(self) -> str:
        """Serialize to the compact persisted form."""
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, value: str) -> ReviewAppStatus:
        """Parse the persisted form.

        Raises:
            ReviewAppError: If the value is not a valid record.
        """
        try:
            data = json.loads(value)
            return cls(
                pull_request=str(data.get("pull_request", "")),
                status=str(data.get("status", "")),
            )
        except (json.JSONDecodeError, AttributeError) as e:
            raise ReviewAppError(
                f"Invalid review app status record: {value!r}",
                code="invalid_status_record",
            ) from e


def derive_target_status(
    create_review_app: bool,
    webhook_event: str,
    persisted: ReviewAppStatus | None,
) -> PRStatus:
    """Return the status a webhook event asks for.

    Args:
        create_review_app: Whether a review app was explicitly requested.
        webhook_event: Webhook event name.
        persisted: Current record, or None if none exists.

    Returns:
        Target status; UNCHANGED means keep the persisted value.
    """
    if create_review_app:
        return PRStatus.CREATED
    if webhook_event in (WebhookEvent.CREATED.value, WebhookEvent.REOPENED.value):
        return PRStatus.OPEN
    if webhook_event == WebhookEvent.MERGED.value:
        return PRStatus.MERGED
    if webhook_event == WebhookEvent.CLOSED.value:
        return PRStatus.CLOSED
    if persisted is None:
        return PRStatus.OPEN
    return PRStatus.UNCHANGED


def needs_persisted_status(create_review_app: bool, webhook_event: str) -> bool:
    """Return True if the target depends on the persisted record."""
    return not create_review_app and webhook_event not in EXPLICIT_EVENTS


class ReviewAppStateMachine:
    """Decides whether a pull request build continues past prebuild.

    Args:
        context: Build context.
        store: Parameter store holding the status records.
        stacks: Stack service owning review app stacks.
        state: Working-tree state, used to mark the build skipped.
        parameter_root: Namespace prepended to the record name.
        stack_prefix: Review app stack name prefix.
    """

    def __init__(
        self,
        context: BuildContext,
        store: ParameterStore,
        stacks: StackService,
        state: FileState,
        parameter_root: str = "",
        stack_prefix: str = "apppack-reviewapp-",
    ) -> None:
        self.context = context
        self.store = store
        self.stacks = stacks
        self.state = state
        self.parameter_root = parameter_root
        self.stack_prefix = stack_prefix

    @property
    def parameter_name(self) -> str:
        """Name of the status record for this pull request."""
        return (
            f"{self.parameter_root}/pipelines/{self.context.app_name}"
            f"/review-apps/{self.context.source_version}"
        )

    @property
    def stack_name(self) -> str:
        """Name of the review app stack for this pull request."""
        return f"{self.stack_prefix}{self.context.app_name}{self.context.pr_number}"

    def get_status(self) -> ReviewAppStatus | None:
        """Return the persisted record, or None if there is none or it is unreadable.

        Raises:
            StoreError: If the store fails for any reason other than a missing record.
        """
        logger.debug("Getting PR status for %s", self.context.source_version)
        try:
            value = self.store.get_value(self.parameter_name)
        except ParameterNotFoundError:
            logger.debug("No PR status recorded for %s", self.context.source_version)
            return None
        try:
            return ReviewAppStatus.from_json(value)
        except ReviewAppError as e:
            logger.warning("Ignoring unreadable PR status %s: %s", self.parameter_name, e)
            return None

    def set_status(self, status: PRStatus) -> ReviewAppStatus:
        """Persist a status and return the written record."""
        record = ReviewAppStatus(
            pull_request=self.context.source_version,
            status=status.value,
        )
        logger.info("Setting PR %s status to %s", record.pull_request, record.status)
        self.store.set_value(self.parameter_name, record.to_json())
        return record

    def stack_exists(self) -> bool:
        """Best-effort check for the review app stack.

        Any failure is logged and reported as "does not exist".
        """
        try:
            self.stacks.describe(self.stack_name)
        except StackNotFoundError:
            return False
        except AppBuilderError as e:
            logger.debug("Unable to access review app stack %s: %s", self.stack_name, e)
            return False
        return True

    def teardown(self, status: PRStatus) -> None:
        """Record a terminal status and destroy the review app stack if present."""
        self.set_status(status)
        if self.stack_exists():
            logger.info("Deleting review app for %s", self.context.source_version)
            self.stacks.destroy(self.stack_name)

    def handle(self) -> bool:
        """Apply the webhook event to the persisted status.

        Returns:
            True if the build was marked skipped and should stop.

        Raises:
            ReviewAppError: If a pipeline build is not for a pull request.
            StoreError: If a status write (or a non-missing read) fails.
            StackError: If destroying the review app stack fails.
        """
        if not self.context.pipeline:
            return False
        if not self.context.is_pull_request:
            raise ReviewAppError(
                f"not a pull request: CODEBUILD_SOURCE_VERSION={self.context.source_version}",
                code="not_a_pull_request",
            )

        explicit = not needs_persisted_status(
            self.context.create_review_app, self.context.webhook_event
        )
        persisted = None if explicit else self.get_status()
        target = derive_target_status(
            self.context.create_review_app,
            self.context.webhook_event,
            persisted,
        )
        logger.debug("PR status target: %r", target.value)

        if target in TERMINAL_STATUSES:
            self.teardown(target)
            self.state.skip_build(self.context.build_id)
            return True

        if target == PRStatus.UNCHANGED:
            # UNCHANGED is only derived from an existing record
            current = persisted.status if persisted is not None else PRStatus.OPEN.value
        else:
            if explicit:
                persisted = self.get_status()
            if persisted is None or persisted.status != target.value:
                persisted = self.set_status(target)
            current = persisted.status

        if current != PRStatus.CREATED.value:
            logger.info("Review app for %s is %r; skipping build", self.context.source_version, current)
            self.state.skip_build(self.context.build_id)
            return True
        return False


__all__ = [
    "ReviewAppError",
    "ReviewAppStateMachine",
    "ReviewAppStatus",
    "derive_target_status",
]
