from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from companion_app.core.config import settings
from companion_app.core.telemetry import log_event, timed_step
from companion_app.models.schemas import (
    CompanionProfile,
    ControllerSnapshot,
    ConversationMessage,
    LifecycleState,
    SessionEvaluation,
    SessionEvent,
    SessionRecord,
)
from companion_app.services.evaluation_scorer import SessionEvaluator
from companion_app.services.identity import IdentityProvider
from companion_app.services.session_persistence import SessionPersistence
from companion_app.services.voice_transport import (
    ConversationHandle,
    VoiceSessionConfig,
    VoiceTransport,
)


EventListener = Callable[[SessionEvent], Awaitable[None]]

_STARTABLE_STATES = {"idle", "finished"}


class SessionController:
    """Lifecycle of one companion voice session: idle -> connecting -> active -> finished.

    Transitions are serialized by a lock. Transcript events from the transport
    go through a queue with a single consumer, so messages are appended in
    arrival order and never interleave with a transition. ``end_call`` drains
    the queue before the transcript is evaluated.
    """

    def __init__(
        self,
        companion: CompanionProfile,
        *,
        transport: VoiceTransport,
        evaluator: SessionEvaluator,
        persistence: SessionPersistence,
        identity: IdentityProvider,
        voice_config: Optional[VoiceSessionConfig] = None,
        listener: Optional[EventListener] = None,
        completion_display_seconds: Optional[float] = None,
    ) -> None:
        self._companion = companion
        self._transport = transport
        self._evaluator = evaluator
        self._persistence = persistence
        self._identity = identity
        self._voice_config = voice_config or VoiceSessionConfig.from_settings()
        self._listener = listener
        self._completion_display_seconds = (
            completion_display_seconds
            if completion_display_seconds is not None
            else settings.EVALUATION_COMPLETE_DISPLAY_SECONDS
        )

        self._lock = asyncio.Lock()
        self._state: LifecycleState = "idle"
        self._transcript: List[ConversationMessage] = []
        self._is_muted = False
        self._is_evaluating = False
        self._evaluation_complete = False
        self._call_id: Optional[str] = None
        self._conversation: Optional[ConversationHandle] = None
        self._last_record: Optional[SessionRecord] = None
        self._last_evaluation: Optional[SessionEvaluation] = None

        self._events: Optional[asyncio.Queue[Optional[ConversationMessage]]] = None
        self._consumer_task: Optional[asyncio.Task[None]] = None
        self._completion_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------ #
    #  Read-only views                                                    #
    # ------------------------------------------------------------------ #

    @property
    def companion(self) -> CompanionProfile:
        return self._companion

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def transcript(self) -> Tuple[ConversationMessage, ...]:
        return tuple(self._transcript)

    @property
    def is_muted(self) -> bool:
        return self._is_muted

    @property
    def evaluation_complete(self) -> bool:
        return self._evaluation_complete

    @property
    def call_id(self) -> Optional[str]:
        return self._call_id

    @property
    def conversation(self) -> Optional[ConversationHandle]:
        return self._conversation

    @property
    def last_record(self) -> Optional[SessionRecord]:
        return self._last_record

    def snapshot(self) -> ControllerSnapshot:
        return ControllerSnapshot(
            companion_id=self._companion.id,
            state=self._state,
            is_muted=self._is_muted,
            is_evaluating=self._is_evaluating,
            evaluation_complete=self._evaluation_complete,
            call_id=self._call_id,
            transcript=list(self._transcript),
            last_record=self._last_record,
            last_evaluation=self._last_evaluation,
        )

    # ------------------------------------------------------------------ #
    #  Commands                                                           #
    # ------------------------------------------------------------------ #

    async def start_call(self) -> bool:
        """Open a voice session. Returns False when busy or when the transport fails."""
        if self._state not in _STARTABLE_STATES:
            log_event(
                "controller",
                "start_ignored",
                status="warning",
                companion_id=self._companion.id,
                details={"state": self._state},
            )
            return False

        async with self._lock:
            if self._state not in _STARTABLE_STATES:
                return False

            self._cancel_completion_timer()
            self._transcript = []
            self._is_muted = False
            self._evaluation_complete = False
            self._last_record = None
            self._last_evaluation = None
            self._call_id = None
            await self._set_state("connecting")
            self._start_consumer()

            with timed_step(
                "controller",
                "start_call",
                companion_id=self._companion.id,
                details={"agent_id": self._voice_config.agent_id},
            ) as step:
                try:
                    conversation = await self._transport.start_session(self._voice_config, self._on_message)
                except Exception as exc:
                    step["connected"] = False
                    log_event(
                        "controller",
                        "connection_failed",
                        status="warning",
                        companion_id=self._companion.id,
                        details={"error": f"{type(exc).__name__}: {exc}"},
                    )
                    await self._stop_consumer()
                    await self._set_state("idle")
                    return False

                self._conversation = conversation
                self._call_id = conversation.conversation_id or f"call_{int(time.time() * 1000)}"
                step["connected"] = True
                step["call_id"] = self._call_id

            await self._set_state("active")
            return True

    async def toggle_mute(self) -> bool:
        """Flip the microphone mute flag; only meaningful while active."""
        if self._state != "active":
            return self._is_muted
        async with self._lock:
            if self._state != "active" or self._conversation is None:
                return self._is_muted
            muted = not self._is_muted
            await self._conversation.set_muted(muted)
            self._is_muted = muted
            log_event(
                "controller",
                "toggle_mute",
                call_id=self._call_id,
                companion_id=self._companion.id,
                details={"muted": muted},
            )
            await self._notify("session_state", self.snapshot().model_dump(mode="json"))
            return muted

    async def end_call(self) -> Optional[SessionRecord]:
        """Tear down the active call, evaluate it and save it.

        A no-op returning ``None`` unless the controller is active. A
        ``PersistenceError`` propagates after the controller has still reached
        ``finished`` with the completion flag set.
        """
        if self._state != "active":
            log_event(
                "controller",
                "end_ignored",
                companion_id=self._companion.id,
                details={"state": self._state},
            )
            return None

        async with self._lock:
            if self._state != "active":
                return None

            await self._set_state("finished")
            await self._close_conversation()
            await self._stop_consumer()

            call_id = self._call_id
            messages = list(self._transcript)
            self._is_evaluating = True
            try:
                with timed_step(
                    "controller",
                    "end_call",
                    call_id=call_id,
                    companion_id=self._companion.id,
                    details={"messages": len(messages)},
                ) as step:
                    user_id = await self._identity.resolve_user_id()
                    evaluation: Optional[SessionEvaluation] = None
                    if messages and call_id:
                        evaluation = await self._evaluator.evaluate(call_id, messages, self._companion)
                        self._last_evaluation = evaluation
                        step["score"] = evaluation.score
                    record = await self._persistence.persist(
                        self._companion.id,
                        user_id,
                        call_id,
                        evaluation,
                    )
                    self._last_record = record
                    step["saved"] = record is not None
                    return record
            finally:
                self._is_evaluating = False
                self._call_id = None
                self._evaluation_complete = True
                self._schedule_completion_reset()
                await self._notify(
                    "evaluation_ready",
                    {
                        "evaluation": self._last_evaluation.model_dump(mode="json") if self._last_evaluation else None,
                        "record": self._last_record.model_dump(mode="json") if self._last_record else None,
                    },
                )
                await self._notify("session_state", self.snapshot().model_dump(mode="json"))

    async def send_audio(self, chunk: bytes) -> None:
        if self._state != "active" or self._conversation is None:
            return
        await self._conversation.send_audio(chunk)

    async def aclose(self) -> None:
        """Release timers and the transport without evaluating anything."""
        self._cancel_completion_timer()
        async with self._lock:
            await self._close_conversation()
            await self._stop_consumer()
            if self._state in {"connecting", "active"}:
                self._state = "idle"
                self._call_id = None
        log_event("controller", "disposed", companion_id=self._companion.id)

    # ------------------------------------------------------------------ #
    #  Transcript channel                                                 #
    # ------------------------------------------------------------------ #

    async def _on_message(self, role: str, content: str) -> None:
        if self._events is None or self._state not in {"connecting", "active"}:
            return
        await self._events.put(ConversationMessage(role=role, content=content))

    def _start_consumer(self) -> None:
        self._events = asyncio.Queue()
        self._consumer_task = asyncio.create_task(self._consume(self._events))

    async def _consume(self, events: "asyncio.Queue[Optional[ConversationMessage]]") -> None:
        while True:
            message = await events.get()
            if message is None:
                return
            self._transcript.append(message)
            log_event(
                "controller",
                "transcript_message",
                call_id=self._call_id,
                companion_id=self._companion.id,
                details={"role": message.role, "chars": len(message.content), "count": len(self._transcript)},
            )
            await self._notify("transcript_update", message.model_dump())

    async def _stop_consumer(self) -> None:
        events, task = self._events, self._consumer_task
        self._events = None
        self._consumer_task = None
        if events is None or task is None:
            return
        # Sentinel lets the consumer append everything already queued first.
        await events.put(None)
        await task

    # ------------------------------------------------------------------ #
    #  Helpers                                                            #
    # ------------------------------------------------------------------ #

    async def _close_conversation(self) -> None:
        conversation, self._conversation = self._conversation, None
        if conversation is None:
            return
        try:
            await conversation.end_session()
        except Exception as exc:
            log_event(
                "controller",
                "transport_teardown_failed",
                status="warning",
                call_id=self._call_id,
                companion_id=self._companion.id,
                details={"error": f"{type(exc).__name__}: {exc}"},
            )

    async def _set_state(self, state: LifecycleState) -> None:
        previous, self._state = self._state, state
        log_event(
            "controller",
            "state_transition",
            call_id=self._call_id,
            companion_id=self._companion.id,
            details={"from": previous, "to": state},
        )
        await self._notify("session_state", self.snapshot().model_dump(mode="json"))

    def _schedule_completion_reset(self) -> None:
        self._cancel_completion_timer()
        self._completion_task = asyncio.create_task(self._clear_completion_after(self._completion_display_seconds))

    def _cancel_completion_timer(self) -> None:
        task, self._completion_task = self._completion_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _clear_completion_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._evaluation_complete = False
        self._completion_task = None
        await self._notify("session_state", self.snapshot().model_dump(mode="json"))

    async def _notify(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._listener is None:
            return
        try:
            await self._listener(SessionEvent(type=event_type, data=data))
        except Exception as exc:
            log_event(
                "controller",
                "listener_failed",
                status="warning",
                companion_id=self._companion.id,
                details={"event_type": event_type, "error": f"{type(exc).__name__}: {exc}"},
            )
