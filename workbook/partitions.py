"""Resolution of facility names to partition keys."""
import logging
import unicodedata
from typing import Dict, Mapping, Optional

from sync.models import UNRESOLVED_PARTITION

logger = logging.getLogger(__name__)

DEFAULT_PARTITIONS: Dict[str, int] = {
    'ふじみの': 7,
    'みさと': 10,
    'いちかわ': 14,
}


class PartitionResolver:
    """Map facility names (or file names containing them) to partition keys."""

    def __init__(self, mapping: Optional[Mapping[str, int]] = None):
        """
        Initialize the resolver.

        Args:
            mapping: Facility name -> partition key; names are matched as
                substrings in mapping order (default: DEFAULT_PARTITIONS)
        """
        source = DEFAULT_PARTITIONS if mapping is None else mapping
        self.mapping: Dict[str, int] = {}
        for name, key in source.items():
            if int(key) <= UNRESOLVED_PARTITION:
                raise ValueError(f"partition key for {name!r} must be >= 1, got {key}")
            self.mapping[self._normalize(name)] = int(key)

    def resolve(self, name: Optional[str]) -> int:
        """
        Resolve a name to its partition key.

        Args:
            name: Facility name or file name

        Returns:
            Partition key, or 0 when no mapping matches
        """
        if not name:
            return UNRESOLVED_PARTITION

        normalized = self._normalize(str(name))
        for candidate, key in self.mapping.items():
            if candidate in normalized:
                return key

        return UNRESOLVED_PARTITION

    @staticmethod
    def _normalize(text: str) -> str:
        # file names from macOS shares arrive decomposed (NFD)
        return unicodedata.normalize('NFC', text).strip()
