"""
Database Schemas for SkillSwap

Each Pydantic model describes the documents of one MongoDB collection. The
collection name is given in the model docstring. Ids of other documents are
stored as stringified ObjectIds.
"""
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "admin"]
FriendshipStatus = Literal["pending", "accepted", "declined", "blocked"]
SwapStatus = Literal["pending", "accepted", "rejected", "completed", "cancelled"]
SwapAction = Literal["accept", "reject", "complete", "cancel"]

# statuses the recipient may resolve a pending friendship to
FriendshipResolution = Literal["accepted", "declined"]

# action -> (required current status, new status, allowed actor)
# actor is "to" (recipient), "from" (sender) or "either" participant
SWAP_TRANSITIONS: Dict[str, Tuple[str, str, str]] = {
    "accept": ("pending", "accepted", "to"),
    "reject": ("pending", "rejected", "to"),
    "cancel": ("pending", "cancelled", "from"),
    "complete": ("accepted", "completed", "either"),
}


def pair_key(a: str, b: str) -> str:
    """Order-independent key for a pair of user ids."""
    return ":".join(sorted([a, b]))


class User(BaseModel):
    """
    Users collection schema
    Collection name: "users"
    """
    name: str = Field(..., min_length=1, description="Display name")
    email: EmailStr = Field(..., description="Unique email address")
    password: Optional[str] = Field(None, description="bcrypt hash, absent for Google accounts")
    google_id: Optional[str] = Field(None, description="Google subject (sub) identifier")
    location: Optional[str] = Field(None, description="City/Area")
    profilePhoto: Optional[str] = Field(None, description="Profile photo URL")
    skillsOffered: List[str] = Field(default_factory=list)
    skillsWanted: List[str] = Field(default_factory=list)
    availability: List[str] = Field(default_factory=list, description="e.g. weekends, evenings")
    isPublic: bool = True
    isActive: bool = True
    rating: float = Field(0.0, ge=0, le=5)
    reviewCount: int = Field(0, ge=0)
    role: Role = "user"


class Friendship(BaseModel):
    """
    Friend requests and friendships
    Collection name: "friendships"
    """
    requester: str
    recipient: str
    pairKey: str = Field(..., description="sorted requester/recipient ids, unique")
    status: FriendshipStatus = "pending"


class Message(BaseModel):
    """
    Chat messages, append-only
    Collection name: "messages"
    conversationId is the id of the friendship the chat belongs to.
    """
    conversationId: str
    senderId: str
    content: str = Field(..., min_length=1)


class SwapRequest(BaseModel):
    """
    Skill swap proposals
    Collection name: "swapRequests"
    """
    fromUserId: str
    toUserId: str
    offeredSkill: str = Field(..., min_length=1)
    requestedSkill: str = Field(..., min_length=1)
    message: str = ""
    status: SwapStatus = "pending"


class Rating(BaseModel):
    """
    Ratings left after a completed swap
    Collection name: "ratings"
    """
    raterId: str
    ratedUserId: str
    swapRequestId: str
    rating: int = Field(..., ge=1, le=5)
    feedback: str = Field(..., max_length=500)
