"""Payload validation rules.

The origin offers no integrity API, so corruption is detected with
heuristics. Each heuristic is a rule; ``TileValidator`` runs them in order
and raises ``IntegrityError`` on the first failure.
"""

from __future__ import annotations

import hashlib
import logging
from io import BytesIO
from typing import TYPE_CHECKING, Protocol

from PIL import Image, UnidentifiedImageError

from tiles.errors import IntegrityError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from settings import ValidationSettings

logger = logging.getLogger(__name__)


class ValidationRule(Protocol):
    name: str

    def check(self, payload: bytes) -> str | None:
        """Return a failure reason, or None when the payload passes."""


class MinimumSizeRule:
    name = 'min-size'

    def __init__(self, min_bytes: int) -> None:
        self.min_bytes = min_bytes

    def check(self, payload: bytes) -> str | None:
        if len(payload) < self.min_bytes:
            return f'{len(payload)} bytes is below the {self.min_bytes}-byte minimum'
        return None


class PlaceholderSignatureRule:
    """Look for known placeholder markers at the start of small payloads."""

    name = 'placeholder-signature'

    def __init__(
        self,
        markers: Iterable[str | bytes],
        *,
        scan_limit: int,
        scan_window: int,
    ) -> None:
        self.markers = tuple(
            m.encode('utf-8') if isinstance(m, str) else m for m in markers if m
        )
        self.scan_limit = scan_limit
        self.scan_window = scan_window

    def check(self, payload: bytes) -> str | None:
        if self.scan_limit and len(payload) >= self.scan_limit:
            return None
        head = payload[: self.scan_window]
        for marker in self.markers:
            if marker in head:
                return f'payload contains placeholder marker {marker!r}'
        return None


class PlaceholderDigestRule:
    """Reject payloads byte-identical to known placeholder tiles."""

    name = 'placeholder-digest'

    def __init__(self, digests: Iterable[str]) -> None:
        self.digests = frozenset(d.lower() for d in digests)

    def check(self, payload: bytes) -> str | None:
        if not self.digests:
            return None
        if hashlib.sha256(payload).hexdigest() in self.digests:
            return 'payload matches a known placeholder digest'
        return None


class ImageDecodeRule:
    """Require the payload to be a decodable image."""

    name = 'image-decode'

    def check(self, payload: bytes) -> str | None:
        try:
            with Image.open(BytesIO(payload)) as img:
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            return f'payload is not a decodable image: {e}'
        return None


class TileValidator:
    """Runs a sequence of rules against a payload."""

    def __init__(self, rules: Sequence[ValidationRule]) -> None:
        self.rules = list(rules)

    @classmethod
    def from_settings(
        cls,
        settings: ValidationSettings,
        extra_digests: Iterable[str] = (),
    ) -> TileValidator:
        rules: list[ValidationRule] = [
            MinimumSizeRule(settings.min_bytes),
            PlaceholderSignatureRule(
                settings.placeholder_markers,
                scan_limit=settings.scan_limit,
                scan_window=settings.scan_window,
            ),
        ]
        digests = [*settings.placeholder_digests, *extra_digests]
        if digests:
            rules.append(PlaceholderDigestRule(digests))
        if settings.verify_image_decode:
            rules.append(ImageDecodeRule())
        return cls(rules)

    def failure(self, payload: bytes) -> str | None:
        for rule in self.rules:
            reason = rule.check(payload)
            if reason is not None:
                return f'{rule.name}: {reason}'
        return None

    def validate(self, payload: bytes, *, label: str = '') -> None:
        """Raise IntegrityError when any rule rejects the payload."""
        reason = self.failure(payload)
        if reason is not None:
            where = f' for {label}' if label else ''
            msg = f'Invalid payload{where}: {reason}'
            raise IntegrityError(msg)

    def is_valid(self, payload: bytes) -> bool:
        return self.failure(payload) is None
