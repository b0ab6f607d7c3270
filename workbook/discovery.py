"""Discovery of source workbooks on the configured share."""
import logging
from pathlib import Path
from typing import Iterable, List

from sync.errors import ClassifiedError

logger = logging.getLogger(__name__)

OFFICE_OWNER_PREFIX = '~$'


def discover_source_files(base_path: str, patterns: Iterable[str]) -> List[str]:
    """
    Find candidate source workbooks below base_path.

    Office owner files (~$*) are excluded. Results are sorted so that cycles
    submit tasks in a stable order.

    Args:
        base_path: Directory to search recursively
        patterns: Glob patterns such as '*.xlsm'

    Returns:
        Sorted list of file paths

    Raises:
        ClassifiedError: If base_path does not exist
    """
    base = Path(base_path)
    if not base.is_dir():
        raise ClassifiedError.source_not_found(str(base))

    found = set()
    for pattern in patterns:
        for path in base.rglob(pattern):
            if path.name.startswith(OFFICE_OWNER_PREFIX) or not path.is_file():
                continue
            found.add(str(path))

    files = sorted(found)
    logger.info(f"Discovered {len(files)} source files under {base}")
    return files
