"""Detector lifecycle: loading -> ready, or loading -> fallback (terminal for the run)."""
from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class DetectorState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    FALLBACK = "fallback"


class DetectorLifecycle:
    """
    One per model-backed detector per run. There is no transition out of FALLBACK:
    a failed detector stays on heuristics until the next start().
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._state = DetectorState.LOADING

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is DetectorState.READY

    def mark_ready(self) -> bool:
        """LOADING -> READY. Returns False if the detector already fell back."""
        if self._state is not DetectorState.LOADING:
            return False
        self._state = DetectorState.READY
        logger.info("%s ready", self._name)
        return True

    def mark_failed(self, error: BaseException | None = None) -> bool:
        """LOADING/READY -> FALLBACK. Returns True on the first failure only."""
        if self._state is DetectorState.FALLBACK:
            return False
        self._state = DetectorState.FALLBACK
        logger.warning("%s unavailable, using fallback for the rest of the session: %s", self._name, error)
        return True

    def reset(self) -> None:
        self._state = DetectorState.LOADING
