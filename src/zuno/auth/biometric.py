"""Biometric gate used by quick unlock."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum


class BiometricType(str, Enum):
    NONE = "none"
    TOUCH_ID = "touch_id"
    FACE_ID = "face_id"
    OPTIC_ID = "optic_id"
    FINGERPRINT = "fingerprint"


class BiometricGate(ABC):
    """
    Device-owner check that does not involve the relying party.

    Implementations raise BiometricsNotAvailable when there is no enrolled
    sensor and BiometricAuthenticationFailed when the user is rejected or
    cancels.
    """

    @property
    def biometric_type(self) -> BiometricType:
        return BiometricType.NONE

    @abstractmethod
    def is_available(self) -> bool:
        """Whether a biometric check can be performed right now."""

    @abstractmethod
    async def authenticate(self, reason: str) -> None:
        """Prompt the user. Returns only on success."""
