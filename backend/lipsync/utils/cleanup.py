"""Best-effort cleanup of temporary files and remote handles."""

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Outcome of a best-effort cleanup. Failures are reported, never raised."""

    removed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def remove_files(paths: Iterable[str | None]) -> CleanupResult:
    """Delete local files, ignoring ones that are already gone."""
    result = CleanupResult()
    for path in paths:
        if not path:
            continue
        try:
            os.unlink(path)
            result.removed.append(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            result.failed[path] = str(e)
            logger.warning(f"[CLEANUP] Failed to remove {path}: {e}")
    return result
