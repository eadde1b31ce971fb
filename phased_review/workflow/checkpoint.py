"""Human approval checkpoints.

A checkpoint is a synchronous suspension point: the executor packages the
run's progress into a CheckpointRequest, hands it to an approval channel
and performs no further work until a Resolution comes back.

Resolution semantics:
- approve: the run continues; the resolution is recorded as the stage output
- edit: an approval carrying ``edits`` that downstream stages can read
- reject: CheckpointRejected aborts the run (the context stays resumable)
- timeout: CheckpointTimeout, or an auto-approval when the policy says so
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from phased_review.config import AUTO_APPROVE_REASON, CHECKPOINT_POLL_INTERVAL, TimeoutPolicy
from phased_review.errors import CheckpointRejected, CheckpointTimeout

from .cancellation import CancellationToken
from .context import ArtifactRef

logger = logging.getLogger(__name__)


# =============================================================================
# Request / Resolution
# =============================================================================


class CheckpointRequest(BaseModel):
    """Question put to the external approver."""

    model_config = ConfigDict(frozen=True)

    stage_id: str = Field(default="", description="Checkpoint stage raising the request")
    question: str = Field(description="Human-readable question to answer")
    title: str = Field(description="Short title for the approval prompt")
    summary: dict[str, Any] = Field(
        default_factory=dict, description="Snapshot of run metrics (scores, counts, ...)"
    )
    artifact_refs: list[ArtifactRef] = Field(
        default_factory=list, description="Files the approver should review, in order"
    )

    def to_markdown(self) -> str:
        """Format the request for display in a chat or terminal approver."""
        lines = [f"## {self.title}", "", self.question, ""]

        if self.summary:
            lines.append("### Summary")
            for key, value in self.summary.items():
                lines.append(f"- **{key}:** {value}")
            lines.append("")

        if self.artifact_refs:
            lines.append("### Artifacts")
            for ref in self.artifact_refs:
                label = f" ({ref.label})" if ref.label else ""
                lines.append(f"- `{ref.path}` [{ref.format}]{label}")
            lines.append("")

        return "\n".join(lines).rstrip() + "\n"


class Resolution(BaseModel):
    """The approver's answer to a CheckpointRequest."""

    model_config = ConfigDict(frozen=True)

    approved: bool
    reason: str | None = None
    edits: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def approve(cls, reason: str | None = None) -> "Resolution":
        return cls(approved=True, reason=reason)

    @classmethod
    def reject(cls, reason: str) -> "Resolution":
        return cls(approved=False, reason=reason)

    @classmethod
    def edit(cls, reason: str | None = None, **edits: Any) -> "Resolution":
        """Approve and carry edits for downstream stages."""
        return cls(approved=True, reason=reason, edits=edits)


# =============================================================================
# Approval Channels
# =============================================================================


class ApprovalChannel(ABC):
    """Where checkpoint requests go and resolutions come from."""

    @abstractmethod
    def request(
        self,
        request: CheckpointRequest,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Resolution | None:
        """Block until the approver answers.

        Returns:
            The Resolution, or None if the timeout expired first

        Raises:
            RunCancelled: If the token is cancelled while waiting
        """


class CallbackApprovalChannel(ApprovalChannel):
    """Resolves requests by calling a function synchronously.

    Suits terminal prompts, auto-approval policies and tests. The callback
    owns its own waiting, so ``timeout`` is not enforced here.
    """

    def __init__(self, callback: Callable[[CheckpointRequest], Resolution]):
        self.callback = callback

    def request(
        self,
        request: CheckpointRequest,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Resolution | None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled(request.stage_id)
        return self.callback(request)


class QueueApprovalChannel(ApprovalChannel):
    """Thread-safe channel resolved from another thread.

    The executor thread blocks in ``request()``; an external thread (a web
    handler, a chat bot) watches ``pending`` and calls ``resolve()``.
    """

    def __init__(self, poll_interval: float = CHECKPOINT_POLL_INTERVAL):
        self.poll_interval = poll_interval
        self._condition = threading.Condition()
        self._pending: CheckpointRequest | None = None
        self._resolution: Resolution | None = None

    @property
    def pending(self) -> CheckpointRequest | None:
        """The request currently awaiting a resolution, if any."""
        with self._condition:
            return self._pending

    def wait_for_pending(self, timeout: float | None = None) -> CheckpointRequest | None:
        """Block until a request is pending (or the timeout expires)."""
        with self._condition:
            self._condition.wait_for(lambda: self._pending is not None, timeout)
            return self._pending

    def resolve(self, resolution: Resolution) -> None:
        """Answer the pending request.

        Raises:
            RuntimeError: If no request is pending
        """
        with self._condition:
            if self._pending is None:
                raise RuntimeError("No checkpoint is pending")
            self._resolution = resolution
            self._condition.notify_all()

    def request(
        self,
        request: CheckpointRequest,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Resolution | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            self._pending = request
            self._resolution = None
            self._condition.notify_all()
            try:
                while self._resolution is None:
                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled(request.stage_id)
                    wait = self.poll_interval
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            return None
                        wait = min(wait, remaining)
                    self._condition.wait(wait)
                return self._resolution
            finally:
                self._pending = None
                self._resolution = None


# =============================================================================
# Checkpoint Gate
# =============================================================================


class CheckpointGate:
    """Suspends the run until a checkpoint is resolved."""

    def __init__(
        self,
        channel: ApprovalChannel,
        timeout: float | None = None,
        timeout_policy: TimeoutPolicy = TimeoutPolicy.ABORT,
        cancel_token: CancellationToken | None = None,
    ):
        self.channel = channel
        self.timeout = timeout
        self.timeout_policy = timeout_policy
        self.cancel_token = cancel_token

    def checkpoint(self, request: CheckpointRequest) -> Resolution:
        """Wait for the approver's answer.

        Returns:
            An approving Resolution

        Raises:
            CheckpointRejected: If the approver rejected the request
            CheckpointTimeout: If the timeout expired under the abort policy
            RunCancelled: If the run was cancelled while waiting
        """
        logger.info(f"Checkpoint {request.stage_id}: waiting for approval - {request.title}")

        resolution = self.channel.request(request, self.timeout, self.cancel_token)

        if resolution is None:
            if self.timeout_policy == TimeoutPolicy.APPROVE:
                logger.warning(
                    f"Checkpoint {request.stage_id}: no answer within {self.timeout}s, auto-approving"
                )
                resolution = Resolution.approve(AUTO_APPROVE_REASON)
            else:
                raise CheckpointTimeout(request.stage_id, self.timeout or 0.0)

        if not resolution.approved:
            logger.warning(f"Checkpoint {request.stage_id}: rejected ({resolution.reason})")
            raise CheckpointRejected(request.stage_id, resolution.reason)

        logger.info(f"Checkpoint {request.stage_id}: approved")
        return resolution
