"""
Pydantic models shared across the publish pipeline.

A Snapshot is what one publish cycle knows about a guild: the per-cycle
salt, the hashed privileged roles, the hashed registered names of the
members holding them, and one role bitmask per member. Snapshots are
transient; only the staleness flag survives between cycles.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

MAX_PRIVILEGED_ROLES = 8
MAX_REGISTERED_MEMBERS = 3000
SALT_MAX = 0xFFFFFFFF


class Role(BaseModel):
    """A role attached to a guild member, as seen by the membership source."""

    model_config = ConfigDict(frozen=True)

    name: str
    managed_by_bot: bool = Field(
        default=False, description="Integration role created for a bot account"
    )


class Snapshot(BaseModel):
    """Structured content of one artifact.

    ``valid=False`` means the guild has nothing publishable this cycle;
    ``reason`` then says why and every list is empty.
    """

    model_config = ConfigDict(frozen=True)

    valid: bool
    reason: str = ""
    random_salt: int = Field(default=0, ge=0, le=SALT_MAX)
    role_hashes: list[bytes] = Field(default_factory=list)
    member_hashes: list[bytes] = Field(default_factory=list)
    member_role_bitmask: list[int] = Field(default_factory=list)

    @classmethod
    def invalid(cls, reason: str) -> "Snapshot":
        """Build the "no publishable data" signal."""
        return cls(valid=False, reason=reason)

    @property
    def role_count(self) -> int:
        return len(self.role_hashes)

    @property
    def member_count(self) -> int:
        return len(self.member_hashes)


class CycleOutcome(str, Enum):
    """How one guild's publish cycle ended."""

    SKIPPED_UNTRACKED = "skipped_untracked"
    SKIPPED_NOT_DUE = "skipped_not_due"
    PUBLISHED = "published"
    PUBLISHED_FILLER = "published_filler"
    UPLOAD_FAILED = "upload_failed"


class CycleResult(BaseModel):
    """Result of ``PublishCoordinator.publish_tenant``."""

    tenant_id: str
    outcome: CycleOutcome
    data_hash: str = ""
    artifact_size: int = 0
    elapsed_ms: float = 0.0

    @property
    def attempted(self) -> bool:
        """True if the cycle got as far as an upload."""
        return self.outcome in (
            CycleOutcome.PUBLISHED,
            CycleOutcome.PUBLISHED_FILLER,
            CycleOutcome.UPLOAD_FAILED,
        )
