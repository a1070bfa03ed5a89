"""
roster/schemas/ranks.py
Pydantic request models for the rank endpoints.

Request bodies use camelCase field names (the public contract); models
accept snake_case too so services and tests can build them directly.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Rank catalog
# =============================================================================

class RankCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    abbreviation: str = Field(..., min_length=1, max_length=20)
    order_index: int = Field(..., ge=0, alias="orderIndex")
    attendance_required_since_last_rank: Optional[int] = Field(
        None, ge=0, alias="attendanceRequiredSinceLastRank"
    )
    auto_rankup_enabled: bool = Field(False, alias="autoRankupEnabled")

    @field_validator("name", "abbreviation")
    def strip_text(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class RankUpdateRequest(CamelModel):
    """All fields optional; only fields present in the body are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    abbreviation: Optional[str] = Field(None, min_length=1, max_length=20)
    order_index: Optional[int] = Field(None, ge=0, alias="orderIndex")
    attendance_required_since_last_rank: Optional[int] = Field(
        None, ge=0, alias="attendanceRequiredSinceLastRank"
    )
    auto_rankup_enabled: Optional[bool] = Field(None, alias="autoRankupEnabled")

    def changes(self) -> dict:
        """
        Fields explicitly sent by the client. Only the attendance threshold may
        be cleared with null; other nulls are ignored.
        """
        data = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name != "attendance_required_since_last_rank":
                continue
            data[name] = value
        return data


class RankPosition(CamelModel):
    id: int
    order_index: int = Field(..., ge=0, alias="orderIndex")


class RankReorderRequest(CamelModel):
    ranks: List[RankPosition] = Field(..., min_length=1)


class TransitionTrainingRequest(CamelModel):
    training_id: int = Field(..., gt=0, alias="trainingId")


# =============================================================================
# Rank state
# =============================================================================

class AssignRankRequest(CamelModel):
    rank_id: int = Field(..., gt=0, alias="rankId")


class BulkAssignRankRequest(CamelModel):
    user_ids: List[int] = Field(..., min_length=1, alias="userIds")
    rank_id: int = Field(..., gt=0, alias="rankId")


class BulkRetireToggleRequest(CamelModel):
    user_ids: List[int] = Field(..., min_length=1, alias="userIds")


# =============================================================================
# Promotions
# =============================================================================

class ProposePromotionRequest(CamelModel):
    user_id: int = Field(..., gt=0, alias="userId")


class DeclinePromotionRequest(CamelModel):
    decline_reason: Optional[str] = Field(None, max_length=1000, alias="declineReason")


class BotApproveRequest(CamelModel):
    proposal_id: int = Field(..., gt=0, alias="proposalId")
    external_actor_id: Optional[str] = Field(None, max_length=100, alias="externalActorId")


class BotDeclineRequest(CamelModel):
    reason: Optional[str] = Field(None, max_length=1000)
    external_actor_id: Optional[str] = Field(None, max_length=100, alias="externalActorId")


# =============================================================================
# Migration
# =============================================================================

class RankMapping(CamelModel):
    old_rank_id: int = Field(..., alias="oldRankId")
    new_rank_id: int = Field(..., alias="newRankId")


class RankMigrationRequest(CamelModel):
    strategy: str = Field(..., description="recalculate, grandfather or map")
    rank_mappings: Optional[List[RankMapping]] = Field(None, alias="rankMappings")

    @field_validator("strategy")
    def validate_strategy(cls, v):
        valid = ["recalculate", "grandfather", "map"]
        if v not in valid:
            raise ValueError(f"Invalid strategy. Must be one of: {valid}")
        return v

    def mappings(self) -> Optional[List[dict]]:
        if self.rank_mappings is None:
            return None
        return [{"oldRankId": m.old_rank_id, "newRankId": m.new_rank_id} for m in self.rank_mappings]
