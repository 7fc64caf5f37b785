from __future__ import annotations

import threading
from dataclasses import dataclass, field

from app.core.config import Settings


@dataclass(slots=True)
class PipelineContext:
    """Runtime context passed to the runner for one iteration."""

    run_id: str
    iteration: int
    settings: Settings
    stop_event: threading.Event = field(default_factory=threading.Event)
    attempt: int = 1
