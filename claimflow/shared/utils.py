"""
ClaimFlow - Utility Functions
Hashing, identifier and time helpers shared across the workflow components
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Union


class DateTimeUtils:
    """Date and time utilities"""

    @staticmethod
    def utcnow() -> datetime:
        """Timezone-aware current UTC time"""
        return datetime.now(timezone.utc)

    @staticmethod
    def seconds_from_now(seconds: float) -> datetime:
        return DateTimeUtils.utcnow() + timedelta(seconds=seconds)

    @staticmethod
    def elapsed_ms(start: datetime) -> int:
        return int((DateTimeUtils.utcnow() - start).total_seconds() * 1000)


class DataUtils:
    """Data processing utilities"""

    @staticmethod
    def generate_hash(data: Union[str, bytes, Dict, List]) -> str:
        """Generate SHA-256 hash of data"""
        if isinstance(data, (dict, list)):
            data = json.dumps(data, sort_keys=True)
        if isinstance(data, str):
            data = data.encode("utf-8")
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def claim_id_from_content(content: bytes) -> str:
        """Deterministic claim id so a re-submitted document maps to the same claim"""
        return f"CLM-{DataUtils.generate_hash(content)[:16].upper()}"

    @staticmethod
    def generate_token() -> str:
        return uuid.uuid4().hex
