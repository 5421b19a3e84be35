"""
Cache Entry Model
Pydantic model describing one dependency-cache lookup or save.

restore_keys are ordered most-specific to least-specific; the first key that
matches an existing archive wins.
"""
from typing import List, Optional

from pydantic import BaseModel


class CacheEntry(BaseModel):
    key: str
    restore_keys: List[str] = []
    paths: List[str] = []
    archive_path: Optional[str] = None   # archive actually restored from / saved to
    matched_key: Optional[str] = None    # key of the archive that was restored

    @property
    def hit(self) -> bool:
        return self.matched_key is not None

    @property
    def exact_hit(self) -> bool:
        return self.matched_key == self.key
