"""
Typed, versioned sync checkpoint stored on DataSource.checkpoint
"""
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError

from outreach_sync.utils.logger import log

CHECKPOINT_VERSION = 1


class SyncPhase(str, Enum):
    ACCOUNTS = "accounts"
    GLOBAL_STATS = "global_stats"
    SEQUENCES = "sequences"
    COMPLETE = "complete"


PHASE_ORDER = (SyncPhase.ACCOUNTS, SyncPhase.GLOBAL_STATS, SyncPhase.SEQUENCES, SyncPhase.COMPLETE)


class CampaignRef(BaseModel):
    """Campaign as listed once per run"""
    external_id: str
    name: str
    status: str = "active"
    created_at: Optional[datetime] = None


class SyncCheckpoint(BaseModel):
    """
    Where a run is and what it has cached.

    cursor_index points at the next campaign to process. A campaign is only
    counted once it finished, so a resumed batch restarts that campaign.
    """
    version: int = CHECKPOINT_VERSION
    run_id: str
    phase: SyncPhase = SyncPhase.ACCOUNTS
    cached_campaigns: Optional[List[CampaignRef]] = None
    listing_offset: int = 0  # Next listing page while cached_campaigns is being built
    cursor_index: int = 0
    total_units: int = 0
    batch_number: int = 1
    heartbeat_at: Optional[datetime] = None
    listing_buffer: List[CampaignRef] = Field(default_factory=list)

    def advance_to(self, phase: SyncPhase):
        """Move forward to `phase`; phases never go back within a run"""
        if PHASE_ORDER.index(phase) < PHASE_ORDER.index(self.phase):
            raise ValueError(f"Cannot move checkpoint from {self.phase.value} back to {phase.value}")
        self.phase = phase

    @property
    def remaining(self) -> int:
        return max(0, self.total_units - self.cursor_index)

    def to_json(self) -> dict:
        return self.model_dump(mode="json")


def load_checkpoint(blob: Any) -> Optional[SyncCheckpoint]:
    """Parse a stored checkpoint. Unknown versions and bad blobs are dropped."""
    if not blob:
        return None
    if not isinstance(blob, dict) or blob.get("version") != CHECKPOINT_VERSION:
        log.warning(f"Discarding checkpoint with unsupported version: {blob!r:.200}")
        return None
    try:
        return SyncCheckpoint.model_validate(blob)
    except ValidationError as e:
        log.warning(f"Discarding invalid checkpoint: {e}")
        return None
