"""
Actor identity and stage signature schemas.

The core never authenticates anyone: it receives an ``Actor`` from the
identity collaborator and trusts it. Signatures are immutable snapshots of
an actor at the moment they performed a stage action.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from stock_transfer.services.orders.enums import ActorRole


class Actor(BaseModel):
    """Identity of the person performing an action."""

    model_config = ConfigDict(str_strip_whitespace=True)

    actor_id: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=255)
    role: ActorRole
    site_id: Optional[str] = Field(None, max_length=128)
    position_title: Optional[str] = Field(None, max_length=255)
    signature_image: Optional[str] = Field(
        None,
        description="Encoded signature image supplied by the identity store",
    )

    def belongs_to(self, site_id: Optional[str]) -> bool:
        """Check if the actor is attached to the given site."""
        return bool(site_id) and self.site_id == site_id


class Signature(BaseModel):
    """Immutable attestation of who performed a stage and when."""

    model_config = ConfigDict(frozen=True)

    actor_id: str
    actor_name: str
    timestamp: datetime
    position_title: Optional[str] = None
    image_blob: Optional[str] = None

    @classmethod
    def from_actor(cls, actor: Actor, timestamp: datetime) -> "Signature":
        """Build a full signature from an actor record."""
        return cls(
            actor_id=actor.actor_id,
            actor_name=actor.name,
            timestamp=timestamp,
            position_title=actor.position_title,
            image_blob=actor.signature_image,
        )

    @classmethod
    def from_stamp(
        cls,
        actor_id: Optional[str],
        actor_name: Optional[str],
        timestamp: Optional[datetime],
    ) -> Optional["Signature"]:
        """Build a bare signature from an actor/time pair stored on an order.

        Returns None when either the actor or the time is missing.
        """
        if not actor_id or timestamp is None:
            return None
        return cls(
            actor_id=actor_id,
            actor_name=actor_name or actor_id,
            timestamp=timestamp,
        )
