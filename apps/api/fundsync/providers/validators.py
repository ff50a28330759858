"""
Data Validation Layer for External API Providers.

Provides:
- NaN/null/infinity handling
- Provider sentinel values ("no data" placeholders)
- Percentage to decimal normalization
- Year parsing for period labels
"""

import logging
import math
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Ward reports unavailable values as -9999.
MISSING_SENTINEL = -9999


class DataValidator:
    """
    Validator for external API responses.

    Handles common data quality issues:
    - NaN, null, infinity values
    - Numbers serialized as strings ("1.234,56" or "1,234.56")
    - Sentinel placeholders
    """

    @staticmethod
    def clean_numeric(
        value: Any,
        default: Optional[float] = None,
        sentinel: Optional[float] = None,
    ) -> Optional[float]:
        """
        Clean numeric value, handling NaN, inf, sentinels and invalid values.

        Args:
            value: Value to clean
            default: Default value if cleaning fails
            sentinel: Provider placeholder meaning "not available"

        Returns:
            Cleaned float value or default
        """
        if value is None or isinstance(value, bool):
            return default

        try:
            if isinstance(value, str):
                text = value.strip().replace("%", "")
                if not text:
                    return default
                if "," in text and "." in text:
                    # Brazilian thousands separators: 1.234,56
                    text = text.replace(".", "").replace(",", ".")
                elif "," in text:
                    text = text.replace(",", ".")
                num = float(text)
            else:
                num = float(value)
        except (ValueError, TypeError) as e:
            logger.warning(f"Failed to convert to numeric: {value!r} - {e}")
            return default

        if math.isnan(num):
            return default

        if math.isinf(num):
            logger.warning(f"Infinite value encountered: {value}")
            return default

        if sentinel is not None and num == sentinel:
            return default

        return num

    @staticmethod
    def clean_percentage(
        value: Any,
        default: Optional[float] = None,
        sentinel: Optional[float] = None,
    ) -> Optional[float]:
        """
        Convert a percentage (15.0 == 15%) to a decimal ratio (0.15).
        """
        num = DataValidator.clean_numeric(value, default=None, sentinel=sentinel)
        if num is None:
            return default
        return num / 100

    @staticmethod
    def clean_year(value: Any) -> Optional[int]:
        """
        Parse a fiscal year from a label such as 2023, "2023" or "2023-12-31".
        """
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value if 1900 <= value <= 2200 else None
        text = str(value).strip()
        if len(text) >= 4 and text[:4].isdigit():
            year = int(text[:4])
            return year if 1900 <= year <= 2200 else None
        return None

    @staticmethod
    def nested(data: Any, *path: str) -> Any:
        """
        Walk nested dicts, returning None when any level is missing.

        Values wrapped as {"value": x} are unwrapped.
        """
        current = data
        for key in path:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if isinstance(current, dict) and "value" in current:
            return current["value"]
        return current
