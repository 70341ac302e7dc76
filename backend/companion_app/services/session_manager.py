from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional, Tuple

from companion_app.core.telemetry import log_event
from companion_app.models.schemas import CompanionProfile
from companion_app.services.identity import ANONYMOUS_SCOPE
from companion_app.services.session_controller import SessionController


ControllerKey = Tuple[str, str]
ControllerFactory = Callable[[Optional[str], CompanionProfile], SessionController]


def controller_key(user_id: Optional[str], companion_id: str) -> ControllerKey:
    return (user_id or ANONYMOUS_SCOPE, companion_id)


class ControllerRegistry:
    """One SessionController per (user, companion) pair for the life of the app."""

    def __init__(self, factory: ControllerFactory) -> None:
        self._factory = factory
        self._controllers: Dict[ControllerKey, SessionController] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, user_id: Optional[str], companion: CompanionProfile) -> SessionController:
        key = controller_key(user_id, companion.id)
        async with self._lock:
            controller = self._controllers.get(key)
            if controller is None:
                controller = self._factory(user_id, companion)
                self._controllers[key] = controller
                log_event(
                    "registry",
                    "controller_created",
                    companion_id=companion.id,
                    details={"controllers": len(self._controllers)},
                )
            return controller

    def get(self, user_id: Optional[str], companion_id: str) -> Optional[SessionController]:
        return self._controllers.get(controller_key(user_id, companion_id))

    def __len__(self) -> int:
        return len(self._controllers)

    async def dispose_all(self) -> None:
        async with self._lock:
            controllers: List[SessionController] = list(self._controllers.values())
            self._controllers.clear()
        for controller in controllers:
            await controller.aclose()
        log_event("registry", "disposed", details={"controllers": len(controllers)})
