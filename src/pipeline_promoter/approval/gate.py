"""
Approval Gate - externally resolved condition with a deadline.

A run reaching an approval stage opens a request and blocks in wait() until
a decision arrives, the deadline passes, or the run is aborted. Waiters sleep
on a threading.Condition; nothing polls.
"""

import logging
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

from pipeline_promoter.audit import AuditEventType, AuditLevel, AuditLogger, AuditResult
from pipeline_promoter.core.exceptions import (
    AlreadyDecidedError,
    NotFoundError,
    StageAbortedError,
)
from pipeline_promoter.core.models import (
    ApprovalDisposition,
    ApprovalRequest,
    Decision,
    Identity,
    Permission,
    utc_now,
)
from pipeline_promoter.policy.store import AccessPolicyStore
from pipeline_promoter.stages.context import CancelToken

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ApprovalRequest], None]


class ApprovalGate:
    """
    Holds open approval requests and the threads waiting on them.

    Disposition is set at most once: the first decision, expiry or withdrawal
    wins and every later decision raises AlreadyDecidedError.
    """

    def __init__(
        self,
        policy: AccessPolicyStore | None = None,
        audit: AuditLogger | None = None,
        on_change: ChangeCallback | None = None,
    ):
        """
        Initialize the gate.

        Args:
            policy: Access policy consulted for deciders (None allows anyone)
            audit: Audit logger for request lifecycle events
            on_change: Called with each new or updated request, for persistence
        """
        self._policy = policy
        self._audit = audit
        self._on_change = on_change
        self._condition = threading.Condition()
        self._requests: dict[str, ApprovalRequest] = {}

    def set_change_callback(self, on_change: ChangeCallback | None) -> None:
        self._on_change = on_change

    def _changed(self, request: ApprovalRequest) -> None:
        if self._on_change:
            self._on_change(request)

    def _require(self, request_id: str) -> ApprovalRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFoundError(
                f"Approval request '{request_id}' not found",
                entity_type="approval_request",
                entity_id=request_id,
            )
        return request

    def open(
        self,
        run_id: str,
        stage_name: str,
        timeout_seconds: float,
        environment: str | None = None,
    ) -> ApprovalRequest:
        """Create an open request with deadline = now + timeout."""
        now = datetime.now(timezone.utc)
        request = ApprovalRequest(
            request_id=f"apr_{uuid.uuid4().hex[:12]}",
            run_id=run_id,
            stage_name=stage_name,
            environment=environment,
            created_at=now.isoformat(),
            deadline=(now + timedelta(seconds=timeout_seconds)).isoformat(),
            timeout_seconds=timeout_seconds,
        )
        with self._condition:
            self._requests[request.request_id] = request

        logger.info(
            f"[{run_id}] Approval {request.request_id} opened for '{stage_name}' "
            f"(deadline {request.deadline})"
        )
        if self._audit:
            self._audit.record(
                AuditEventType.APPROVAL_REQUESTED,
                f"Approval requested for {stage_name}",
                target=request.request_id,
                run_id=run_id,
                environment=environment,
                deadline=request.deadline,
            )
        self._changed(request)
        return request

    def restore(self, request: ApprovalRequest) -> ApprovalRequest:
        """Re-register a persisted request, keeping its original deadline."""
        with self._condition:
            current = self._requests.get(request.request_id)
            if current is not None and current.is_terminal:
                return current
            self._requests[request.request_id] = request
            self._condition.notify_all()
        return request

    def get(self, request_id: str) -> ApprovalRequest:
        with self._condition:
            return self._require(request_id)

    def forget(self, request_id: str) -> None:
        """Drop a request from memory once its run no longer needs it."""
        with self._condition:
            self._requests.pop(request_id, None)

    def _expire_locked(self, request: ApprovalRequest) -> ApprovalRequest:
        expired = request.model_copy(
            update={"disposition": ApprovalDisposition.EXPIRED, "decided_at": utc_now()}
        )
        self._requests[request.request_id] = expired
        self._condition.notify_all()
        return expired

    def _record_expiry(self, request: ApprovalRequest) -> None:
        logger.warning(f"[{request.run_id}] Approval {request.request_id} expired")
        if self._audit:
            self._audit.record(
                AuditEventType.APPROVAL_EXPIRED,
                f"Approval for {request.stage_name} expired",
                target=request.request_id,
                run_id=request.run_id,
                result=AuditResult.FAILURE,
                severity=AuditLevel.WARNING,
            )
        self._changed(request)

    def decide(
        self,
        request_id: str,
        decision: Decision | str,
        identity: Identity | str,
        comment: str | None = None,
    ) -> ApprovalRequest:
        """
        Record a decision.

        Raises:
            NotFoundError: If the request is unknown
            AlreadyDecidedError: If the request is terminal or past its deadline
            PermissionDeniedError: If the decider lacks promote on the gated
                environment (the request stays open)
        """
        decision = Decision(decision)
        actor = str(identity)
        expired: ApprovalRequest | None = None

        with self._condition:
            request = self._require(request_id)

            if not request.is_terminal and time.time() >= request.deadline_timestamp:
                request = expired = self._expire_locked(request)

            if request.is_terminal:
                error = AlreadyDecidedError(
                    f"Approval request '{request_id}' is already {request.disposition.value}",
                    request_id=request_id,
                    disposition=request.disposition.value,
                )
            else:
                error = None
                if self._policy and request.environment:
                    self._policy.require(actor, Permission.PROMOTE, request.environment)

                disposition = (
                    ApprovalDisposition.APPROVED
                    if decision == Decision.APPROVE
                    else ApprovalDisposition.REJECTED
                )
                request = request.model_copy(
                    update={
                        "disposition": disposition,
                        "decided_by": actor,
                        "decided_at": utc_now(),
                        "comment": comment,
                    }
                )
                self._requests[request_id] = request
                self._condition.notify_all()

        if expired is not None:
            self._record_expiry(expired)
        if error is not None:
            raise error

        logger.info(
            f"[{request.run_id}] Approval {request_id} {request.disposition.value} by {actor}"
        )
        if self._audit:
            self._audit.record(
                AuditEventType.APPROVAL_DECIDED,
                f"Approval for {request.stage_name} {request.disposition.value}",
                actor=actor,
                target=request_id,
                run_id=request.run_id,
                result=(
                    AuditResult.SUCCESS
                    if request.disposition == ApprovalDisposition.APPROVED
                    else AuditResult.FAILURE
                ),
                comment=comment,
            )
        self._changed(request)
        return request

    def withdraw(self, request_id: str, actor: Identity | str) -> ApprovalRequest:
        """
        Close an open request because its run was aborted.

        A request that is already terminal is returned unchanged.

        Raises:
            NotFoundError: If the request is unknown
        """
        with self._condition:
            request = self._require(request_id)
            if request.is_terminal:
                return request
            request = request.model_copy(
                update={
                    "disposition": ApprovalDisposition.WITHDRAWN,
                    "decided_by": str(actor),
                    "decided_at": utc_now(),
                }
            )
            self._requests[request_id] = request
            self._condition.notify_all()

        logger.info(f"[{request.run_id}] Approval {request_id} withdrawn by {actor}")
        if self._audit:
            self._audit.record(
                AuditEventType.APPROVAL_WITHDRAWN,
                f"Approval for {request.stage_name} withdrawn",
                actor=str(actor),
                target=request_id,
                run_id=request.run_id,
                result=AuditResult.FAILURE,
                severity=AuditLevel.WARNING,
            )
        self._changed(request)
        return request

    def _wake(self) -> None:
        with self._condition:
            self._condition.notify_all()

    def wait(self, request_id: str, cancel_token: CancelToken | None = None) -> ApprovalRequest:
        """
        Block until the request is terminal.

        An unanswered request expires at its deadline.

        Raises:
            NotFoundError: If the request is unknown
            StageAbortedError: If the token is cancelled first
        """
        unregister = cancel_token.add_callback(self._wake) if cancel_token else None
        expired: ApprovalRequest | None = None
        try:
            with self._condition:
                request = self._require(request_id)
                while not request.is_terminal:
                    if cancel_token is not None and cancel_token.cancelled:
                        raise StageAbortedError(
                            f"Approval {request_id} abandoned: {cancel_token.reason}"
                        )
                    remaining = request.deadline_timestamp - time.time()
                    if remaining <= 0:
                        request = expired = self._expire_locked(request)
                        break
                    self._condition.wait(remaining)
                    request = self._require(request_id)
        finally:
            if unregister:
                unregister()

        if expired is not None:
            self._record_expiry(expired)
        return request
