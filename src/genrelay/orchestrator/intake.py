"""Owner input dispatch keyed by the session's pending action."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from genrelay.orchestrator.errors import (
    GenrelayError,
    InsufficientBalanceError,
    RequestValidationError,
)
from genrelay.orchestrator.models import SessionAction, SessionState, TaskView
from genrelay.orchestrator.services import GenerationService, SubmitGeneration
from genrelay.orchestrator.sessions import SessionStore

logger = logging.getLogger(__name__)

_KIND_BY_ACTION: dict[SessionAction, str] = {
    SessionAction.GENERATE_IMAGE: "image",
    SessionAction.GENERATE_VIDEO: "video",
    SessionAction.CHAT: "chat",
    SessionAction.AWAIT_REFERENCE_IMAGE: "video",
}


class IntakeOutcomeKind(str, Enum):
    SUBMITTED = "submitted"
    RESTATE_INTENT = "restate_intent"
    AWAITING_PROMPT = "awaiting_prompt"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID = "invalid"


@dataclass(slots=True)
class IntakeOutcome:
    """Result of feeding one owner message into intake."""

    kind: IntakeOutcomeKind
    task: TaskView | None = None
    message: str | None = None


class GenerationIntake:
    """Turns conversational input into submissions using stored session state.

    Losing the session (expiry, restart with the memory backend) asks the owner
    to restate what they want instead of guessing.
    """

    def __init__(self, *, sessions: SessionStore, service: GenerationService) -> None:
        self.sessions = sessions
        self.service = service

    def begin(
        self,
        *,
        owner_id: str,
        action: SessionAction,
        provider: str,
        model: str,
    ) -> SessionState:
        """Remember what the owner asked for until their next input."""

        return self.sessions.set(
            owner_id,
            SessionState(
                current_action=action,
                action_data={"provider": provider, "model": model},
            ),
        )

    def end(self, owner_id: str) -> None:
        self.sessions.clear(owner_id)

    def handle_input(
        self,
        owner_id: str,
        text: str,
        attachment_ref: str | None = None,
    ) -> IntakeOutcome:
        """Dispatch one owner message. Never raises for lost or bad state."""

        try:
            state = self.sessions.get(owner_id)
        except GenrelayError:
            logger.warning("Session lookup failed for owner %s", owner_id, exc_info=True)
            state = None
        if state is None:
            return IntakeOutcome(IntakeOutcomeKind.RESTATE_INTENT)

        provider = state.action_data.get("provider")
        model = state.action_data.get("model")
        if not isinstance(provider, str) or not isinstance(model, str):
            self._forget(owner_id)
            return IntakeOutcome(IntakeOutcomeKind.RESTATE_INTENT)

        if state.current_action == SessionAction.AWAIT_REFERENCE_IMAGE:
            if attachment_ref is None:
                return IntakeOutcome(
                    IntakeOutcomeKind.AWAITING_PROMPT,
                    message="Send a reference image to animate.",
                )
            if not self._remember(
                owner_id,
                SessionState(
                    current_action=SessionAction.GENERATE_VIDEO,
                    action_data={**state.action_data, "reference": attachment_ref},
                ),
            ):
                return IntakeOutcome(IntakeOutcomeKind.RESTATE_INTENT)
            if not text.strip():
                return IntakeOutcome(
                    IntakeOutcomeKind.AWAITING_PROMPT,
                    message="Describe the motion for the reference image.",
                )
            return self.handle_input(owner_id, text)

        if not text.strip():
            return IntakeOutcome(IntakeOutcomeKind.AWAITING_PROMPT, message="Send a prompt.")

        reference = state.action_data.get("reference")
        if attachment_ref is None and isinstance(reference, str):
            attachment_ref = reference
        try:
            task = self.service.submit(
                SubmitGeneration(
                    owner_id=owner_id,
                    kind=_KIND_BY_ACTION[state.current_action],
                    provider=provider,
                    model=model,
                    prompt=text,
                    auxiliary_ref=attachment_ref,
                ),
            )
        except InsufficientBalanceError as error:
            return IntakeOutcome(IntakeOutcomeKind.INSUFFICIENT_BALANCE, message=str(error))
        except RequestValidationError as error:
            return IntakeOutcome(IntakeOutcomeKind.INVALID, message=str(error))

        self._remember(
            owner_id,
            SessionState(
                current_action=state.current_action,
                action_data={**state.action_data, "task_id": task.task_id},
            ),
        )
        return IntakeOutcome(IntakeOutcomeKind.SUBMITTED, task=task)

    def _remember(self, owner_id: str, state: SessionState) -> bool:
        try:
            self.sessions.set(owner_id, state)
        except GenrelayError:
            logger.warning("Session write failed for owner %s", owner_id, exc_info=True)
            return False
        return True

    def _forget(self, owner_id: str) -> None:
        try:
            self.sessions.clear(owner_id)
        except GenrelayError:
            logger.warning("Session clear failed for owner %s", owner_id, exc_info=True)
