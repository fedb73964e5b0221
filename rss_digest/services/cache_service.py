import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from rss_digest.utils.fileio import atomic_write_text


class CacheServiceError(Exception):
    """Seen-set file exists but cannot be used."""
    pass


class SeenSet:
    """
    Insertion-ordered, append-only set of URL fingerprints.

    Membership is tested during ingestion; additions happen once per story
    after its summary has been assigned.
    """

    def __init__(self, fingerprints: Optional[Iterable[str]] = None) -> None:
        self._entries: Dict[str, None] = dict.fromkeys(fingerprints or [])

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def add(self, fingerprint: str) -> bool:
        """Returns True when the fingerprint was new."""
        if fingerprint in self._entries:
            return False
        self._entries[fingerprint] = None
        return True

    def to_list(self) -> List[str]:
        return list(self._entries)


class SeenSetCache:
    """Loads the seen-set once at pipeline start and writes it once at the end."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.logger = logging.getLogger(__name__)
        self._loaded_count = 0

    def load(self) -> SeenSet:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            self.logger.info(f"No seen-set at {self.path}; starting empty")
            return SeenSet()
        except json.JSONDecodeError as e:
            raise CacheServiceError(f"{self.path} is not valid JSON: {e}") from e

        if not isinstance(data, list) or not all(isinstance(v, str) for v in data):
            raise CacheServiceError(f"{self.path} must be a JSON array of fingerprint strings")

        self._loaded_count = len(data)
        self.logger.info(f"Loaded {len(data)} seen fingerprints from {self.path}")
        return SeenSet(data)

    def save(self, seen: SeenSet) -> None:
        """Atomically replace the seen-set file."""
        atomic_write_text(self.path, json.dumps(seen.to_list(), indent=2) + "\n")
        added = len(seen) - self._loaded_count
        self.logger.info(f"Saved {len(seen)} seen fingerprints ({added:+d} this run)")
