"""
Masking of sensitive fields in captured request and response bodies.

Route-specific sensitive fields match exactly (case-insensitive); the
global baseline secret keys also match as substrings so ``access_token``
is caught by ``token``. Runs before an event leaves the request path.
"""

from typing import Any, Iterable, Set

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_MASK_VALUE = "***MASKED***"


class MaskingEngine:
    """
    Replaces sensitive values with a fixed marker.

    Features:
    - Global baseline keys applied on every route
    - Per-route sensitive fields from the classifier
    - Deep traversal of nested dicts and lists
    """

    def __init__(
        self,
        baseline_keys: Iterable[str] = (),
        mask_value: str = DEFAULT_MASK_VALUE,
    ) -> None:
        self.baseline_keys: Set[str] = {key.lower() for key in baseline_keys}
        self.mask_value = mask_value

    def mask(self, data: Any, sensitive_fields: Iterable[str] = ()) -> Any:
        """
        Return a masked deep copy of ``data``.

        Args:
            data: Body to mask (dict, list, or primitive)
            sensitive_fields: Route fields that must be masked exactly

        Returns:
            Copy with sensitive values replaced
        """
        fields = {name.lower() for name in sensitive_fields}
        return self._deep_copy_and_mask(data, fields)

    def _deep_copy_and_mask(self, obj: Any, fields: Set[str], path: str = "") -> Any:
        if isinstance(obj, dict):
            masked = {}
            for key, value in obj.items():
                current_path = f"{path}.{key}" if path else str(key)
                if self._should_mask_key(str(key), fields):
                    masked[key] = self.mask_value
                    logger.debug("Masked sensitive field", path=current_path)
                else:
                    masked[key] = self._deep_copy_and_mask(value, fields, current_path)
            return masked

        if isinstance(obj, list):
            return [
                self._deep_copy_and_mask(item, fields, f"{path}[{i}]")
                for i, item in enumerate(obj)
            ]

        return obj

    def _should_mask_key(self, key: str, fields: Set[str]) -> bool:
        key_lower = key.lower()
        if key_lower in fields:
            return True
        return any(secret in key_lower for secret in self.baseline_keys)

