import logging
import math
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional

import requests
from bson import ObjectId
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field, field_validator
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from assistant import ERROR_REPLY, OFF_TOPIC_REPLY, AssistantError, build_prompt, generate_reply
from database import (
    FRIENDSHIPS, MESSAGES, RATINGS, SWAP_REQUESTS, USERS, create_document, db, ensure_indexes, get_documents,
)
from relay_client import RelayClient, get_relay
from schemas import (
    SWAP_TRANSITIONS, Friendship, FriendshipResolution, Message, Rating, SwapAction, SwapRequest, SwapStatus,
    User, pair_key,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("skillswap")

SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days

ADMIN_EMAILS = set([
    e.strip().lower() for e in (os.getenv("ADMIN_EMAILS", "").split(",") if os.getenv("ADMIN_EMAILS") else [])
])

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes()
    except PyMongoError as e:
        logger.error("Could not create indexes: %s", e)
    yield


app = FastAPI(title="SkillSwap API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(PyMongoError)
async def database_exception_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# -------------------------
# Utils & Auth
# -------------------------
PUBLIC_PROJECTION = {"password": 0}
CARD_PROJECTION = {"name": 1, "email": 1, "profilePhoto": 1}


def oid(id_str: str) -> ObjectId:
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid id")
    return ObjectId(id_str)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_out(doc: dict) -> dict:
    doc["id"] = str(doc.pop("_id"))
    return doc


def user_card(user_id: str, projection: Optional[dict] = None) -> Optional[dict]:
    if not ObjectId.is_valid(user_id):
        return None
    u = db[USERS].find_one({"_id": ObjectId(user_id)}, projection or CARD_PROJECTION)
    return to_out(u) if u else None


def clean_list(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    return [v.strip() for v in values if v and v.strip()]


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = now_utc() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_current_user(authorization: Optional[str] = Header(default=None)) -> dict:
    """Resolve the caller from `Authorization: Bearer <jwt>`. The token's sub is the user id."""
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split(" ", 1)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization format")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid Authorization scheme")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db[USERS].find_one({"_id": ObjectId(user_id)}, PUBLIC_PROJECTION)
    if not user or not user.get("isActive", True):
        raise HTTPException(status_code=401, detail="Invalid user token")
    return to_out(user)


def token_response(user_id: str) -> dict:
    user = to_out(db[USERS].find_one({"_id": ObjectId(user_id)}, PUBLIC_PROJECTION))
    return {"access_token": create_access_token({"sub": user_id}), "token_type": "bearer", "user": user}


# -------------------------
# Schemas (request models)
# -------------------------
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=80)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    location: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class GoogleAuthPayload(BaseModel):
    id_token: str = Field(..., description="Google ID token from GIS")


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=80)
    location: Optional[str] = None
    profilePhoto: Optional[str] = None
    skillsOffered: Optional[List[str]] = None
    skillsWanted: Optional[List[str]] = None
    availability: Optional[List[str]] = None
    isPublic: Optional[bool] = None


class FriendRequestIn(BaseModel):
    recipientId: str


class FriendRequestUpdate(BaseModel):
    status: FriendshipResolution


class ChatMessageIn(BaseModel):
    conversationId: str
    content: str = Field(..., max_length=2000)

    @field_validator("content")
    @classmethod
    def _not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("content must not be empty")
        return v


class SwapIn(BaseModel):
    toUserId: str
    offeredSkill: str = Field(..., min_length=1, max_length=100)
    requestedSkill: str = Field(..., min_length=1, max_length=100)
    message: Optional[str] = Field("", max_length=1000)

    @field_validator("offeredSkill", "requestedSkill")
    @classmethod
    def _strip_skill(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("skill must not be empty")
        return v


class SwapActionIn(BaseModel):
    action: SwapAction


class RatingIn(BaseModel):
    swapRequestId: str
    ratedUserId: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    feedback: str = Field(..., max_length=500)

    @field_validator("feedback")
    @classmethod
    def _feedback_not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("feedback must not be empty")
        return v


class AssistantIn(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)
    includeProfile: bool = True


# -------------------------
# Basic routes
# -------------------------
@app.get("/")
def read_root():
    return {"message": "SkillSwap API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# -------------------------
# Auth
# -------------------------
@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest):
    email = payload.email.lower()
    if db[USERS].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="User already exists")
    user = User(
        name=payload.name.strip(),
        email=email,
        password=get_password_hash(payload.password),
        location=payload.location,
        role="admin" if email in ADMIN_EMAILS else "user",
    )
    try:
        user_id = create_document(USERS, user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User already exists")
    logger.info("User %s registered", user_id)
    return token_response(user_id)


@app.post("/auth/login")
def login(payload: LoginRequest):
    user = db[USERS].find_one({"email": payload.email.lower()})
    if not user or not user.get("password") or not verify_password(payload.password, user["password"]):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if not user.get("isActive", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return token_response(str(user["_id"]))


@app.post("/auth/google")
def google_auth(payload: GoogleAuthPayload):
    """Verify a Google ID token, upsert the user by email and return an access token."""
    verify_url = "https://oauth2.googleapis.com/tokeninfo"
    try:
        r = requests.get(verify_url, params={"id_token": payload.id_token}, timeout=10)
    except requests.RequestException as e:
        logger.error("Google token verification failed: %s", e)
        raise HTTPException(status_code=502, detail="Could not verify Google token")
    if r.status_code != 200:
        raise HTTPException(status_code=401, detail="Invalid Google token")
    data = r.json()
    sub = data.get("sub")
    email = (data.get("email") or "").lower()
    name = data.get("name") or data.get("given_name") or "User"
    picture = data.get("picture")
    if not sub or not email:
        raise HTTPException(status_code=401, detail="Google token missing subject/email")

    existing = db[USERS].find_one({"email": email})
    if existing:
        if not existing.get("isActive", True):
            raise HTTPException(status_code=403, detail="Account is deactivated")
        update = {"google_id": sub, "updatedAt": now_utc()}
        if not existing.get("profilePhoto") and picture:
            update["profilePhoto"] = picture
        db[USERS].update_one({"_id": existing["_id"]}, {"$set": update})
        user_id = str(existing["_id"])
    else:
        user = User(
            name=name,
            email=email,
            google_id=sub,
            profilePhoto=picture,
            role="admin" if email in ADMIN_EMAILS else "user",
        )
        user_id = create_document(USERS, user)
    return token_response(user_id)


@app.get("/me")
def me(user: dict = Depends(get_current_user)):
    return user


# -------------------------
# Users
# -------------------------
@app.get("/users/profile")
def get_profile(user: dict = Depends(get_current_user)):
    return user


@app.put("/users/profile")
def update_profile(payload: ProfileUpdate, user: dict = Depends(get_current_user)):
    updates = payload.model_dump(exclude_unset=True)
    # location and photo may be cleared, everything else keeps its value
    updates = {k: v for k, v in updates.items() if v is not None or k in ("location", "profilePhoto")}
    for key in ("skillsOffered", "skillsWanted", "availability"):
        if key in updates:
            updates[key] = clean_list(updates[key]) or []
    if "name" in updates:
        if not updates["name"].strip():
            raise HTTPException(status_code=400, detail="Name must not be empty")
        updates["name"] = updates["name"].strip()
    updates["updatedAt"] = now_utc()
    db[USERS].update_one({"_id": ObjectId(user["id"])}, {"$set": updates})
    updated = to_out(db[USERS].find_one({"_id": ObjectId(user["id"])}, PUBLIC_PROJECTION))
    return {
        "message": "Profile updated successfully",
        "profilePhotoUrl": updated.get("profilePhoto"),
        "user": updated,
    }


@app.get("/users/search")
def search_users(
    skill: Optional[str] = None,
    location: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    query = {"isPublic": True, "isActive": True}
    if skill and skill.strip():
        pattern = re.escape(skill.strip())
        query["$or"] = [
            {"skillsOffered": {"$regex": pattern, "$options": "i"}},
            {"skillsWanted": {"$regex": pattern, "$options": "i"}},
        ]
    if location and location.strip():
        query["location"] = {"$regex": re.escape(location.strip()), "$options": "i"}

    skip = (page - 1) * limit
    cursor = (
        db[USERS].find(query, PUBLIC_PROJECTION)
        .sort([("rating", DESCENDING), ("_id", ASCENDING)])
        .skip(skip)
        .limit(limit)
    )
    users = [to_out(u) for u in cursor]
    count = db[USERS].count_documents(query)
    return {
        "users": users,
        "pagination": {
            "current": page,
            "total": math.ceil(count / limit),
            "hasNext": page * limit < count,
            "hasPrev": page > 1,
            "count": count,
        },
    }


@app.get("/users/{user_id}")
def get_public_user(user_id: str):
    u = db[USERS].find_one({"_id": oid(user_id), "isPublic": True, "isActive": True},
                           {"password": 0, "email": 0, "google_id": 0})
    if not u:
        raise HTTPException(404, detail="User not found")
    return to_out(u)


# -------------------------
# Friends
# -------------------------
@app.post("/friends/request", status_code=201)
def send_friend_request(
    payload: FriendRequestIn,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    relay: RelayClient = Depends(get_relay),
):
    recipient_oid = oid(payload.recipientId)
    recipient_id = str(recipient_oid)
    if recipient_id == user["id"]:
        raise HTTPException(400, detail="You cannot send a friend request to yourself.")
    if not db[USERS].find_one({"_id": recipient_oid}, {"_id": 1}):
        raise HTTPException(404, detail="User not found")

    existing = db[FRIENDSHIPS].find_one({
        "$or": [
            {"requester": user["id"], "recipient": recipient_id},
            {"requester": recipient_id, "recipient": user["id"]},
        ]
    })
    if existing:
        raise HTTPException(409, detail="A friend request already exists or you are already friends.")
    friendship = Friendship(requester=user["id"], recipient=recipient_id, pairKey=pair_key(user["id"], recipient_id))
    try:
        friendship_id = create_document(FRIENDSHIPS, friendship)
    except DuplicateKeyError:
        raise HTTPException(409, detail="A friend request already exists or you are already friends.")

    notification = {
        "type": "friend_request",
        "message": f"You have a new friend request from {user.get('name') or 'a new user'}.",
        "friendshipId": friendship_id,
        "sender": {"id": user["id"], "name": user.get("name"), "profilePhoto": user.get("profilePhoto")},
    }
    background_tasks.add_task(relay.send_notification, recipient_id, notification)
    return {"message": "Friend request sent successfully.", "friendshipId": friendship_id}


def _pending_requests(user_id: str) -> list:
    items = []
    for f in db[FRIENDSHIPS].find({"recipient": user_id, "status": "pending"}).sort("createdAt", -1):
        requester = user_card(f["requester"])
        if not requester:
            continue
        items.append({
            "id": str(f["_id"]),
            "status": f["status"],
            "createdAt": f.get("createdAt"),
            "requester": requester,
        })
    return items


def _accepted_friendships(user_id: str):
    return db[FRIENDSHIPS].find({
        "status": "accepted",
        "$or": [{"requester": user_id}, {"recipient": user_id}],
    })


@app.get("/friends/all")
def list_friends_overview(user: dict = Depends(get_current_user)):
    friends = []
    for f in _accepted_friendships(user["id"]):
        friend_id = f["recipient"] if f["requester"] == user["id"] else f["requester"]
        friend = user_card(friend_id)
        if friend:
            friends.append({"friendshipId": str(f["_id"]), "friend": friend})
    return {"pendingRequests": _pending_requests(user["id"]), "friends": friends}


@app.get("/friends/list")
def list_friends(user: dict = Depends(get_current_user)):
    friend_ids = []
    for f in _accepted_friendships(user["id"]):
        friend_ids.append(ObjectId(f["recipient"] if f["requester"] == user["id"] else f["requester"]))
    if not friend_ids:
        return []
    return get_documents(USERS, {"_id": {"$in": friend_ids}}, projection=PUBLIC_PROJECTION)


@app.get("/friends/requests/pending")
def list_pending_requests(user: dict = Depends(get_current_user)):
    return _pending_requests(user["id"])


@app.put("/friends/requests/{request_id}")
def respond_to_friend_request(request_id: str, payload: FriendRequestUpdate, user: dict = Depends(get_current_user)):
    # only the recipient of a still pending request matches
    result = db[FRIENDSHIPS].update_one(
        {"_id": oid(request_id), "recipient": user["id"], "status": "pending"},
        {"$set": {"status": payload.status, "updatedAt": now_utc()}},
    )
    if result.modified_count == 0:
        raise HTTPException(404, detail="Friend request not found or permission denied.")
    return {"message": f"Request successfully {payload.status}."}


# -------------------------
# Chat
# -------------------------
def _conversation_for(friendship_id: str, user: dict) -> dict:
    f = db[FRIENDSHIPS].find_one({"_id": oid(friendship_id)})
    if not f or user["id"] not in (f["requester"], f["recipient"]):
        raise HTTPException(404, detail="Conversation not found")
    return f


@app.get("/chat/{friendship_id}")
def list_messages(friendship_id: str, user: dict = Depends(get_current_user)):
    conversation_id = str(_conversation_for(friendship_id, user)["_id"])
    msgs = []
    # _id breaks ties between messages stored in the same millisecond
    cursor = db[MESSAGES].find({"conversationId": conversation_id}).sort(
        [("createdAt", ASCENDING), ("_id", ASCENDING)]
    )
    for m in cursor:
        msgs.append(to_out(m))
    return msgs


@app.post("/chat/messages", status_code=201)
def send_message(
    payload: ChatMessageIn,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    relay: RelayClient = Depends(get_relay),
):
    f = _conversation_for(payload.conversationId, user)
    if f["status"] != "accepted":
        raise HTTPException(403, detail="You can only chat with friends")
    conversation_id = str(f["_id"])
    msg_id = create_document(MESSAGES, Message(
        conversationId=conversation_id, senderId=user["id"], content=payload.content,
    ))
    msg = to_out(db[MESSAGES].find_one({"_id": ObjectId(msg_id)}))
    # the sender's UI renders the relay echo, not this response
    background_tasks.add_task(relay.send_message, conversation_id, msg)
    return msg


# -------------------------
# Swaps
# -------------------------
def _enrich_swap(swap: dict) -> dict:
    swap = to_out(swap)
    projection = {"name": 1, "profilePhoto": 1}
    swap["fromUser"] = user_card(swap["fromUserId"], projection)
    swap["toUser"] = user_card(swap["toUserId"], projection)
    return swap


def _participant_swap(swap_id: str, user: dict) -> dict:
    swap = db[SWAP_REQUESTS].find_one({"_id": oid(swap_id)})
    if not swap or user["id"] not in (swap["fromUserId"], swap["toUserId"]):
        raise HTTPException(404, detail="Swap request not found")
    return swap


@app.post("/swaps", status_code=201)
def create_swap(
    payload: SwapIn,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    relay: RelayClient = Depends(get_relay),
):
    to_oid = oid(payload.toUserId)
    to_user_id = str(to_oid)
    if to_user_id == user["id"]:
        raise HTTPException(400, detail="You cannot send a swap request to yourself")
    if not db[USERS].find_one({"_id": to_oid}, {"_id": 1}):
        raise HTTPException(404, detail="User not found")
    swap_id = create_document(SWAP_REQUESTS, SwapRequest(
        fromUserId=user["id"],
        toUserId=to_user_id,
        offeredSkill=payload.offeredSkill,
        requestedSkill=payload.requestedSkill,
        message=payload.message or "",
    ))
    background_tasks.add_task(relay.send_notification, to_user_id, {
        "type": "swap_request",
        "message": f"{user.get('name') or 'Someone'} offers {payload.offeredSkill} for {payload.requestedSkill}.",
        "swapId": swap_id,
        "sender": {"id": user["id"], "name": user.get("name"), "profilePhoto": user.get("profilePhoto")},
    })
    return {"message": "Swap request sent successfully", "swapId": swap_id}


@app.get("/swaps")
def list_swaps(
    direction: Literal["sent", "received", "all"] = Query("all", alias="type"),
    status_filter: Optional[SwapStatus] = Query(None, alias="status"),
    user: dict = Depends(get_current_user),
):
    if direction == "sent":
        query = {"fromUserId": user["id"]}
    elif direction == "received":
        query = {"toUserId": user["id"]}
    else:
        query = {"$or": [{"fromUserId": user["id"]}, {"toUserId": user["id"]}]}
    if status_filter:
        query["status"] = status_filter
    return [_enrich_swap(s) for s in db[SWAP_REQUESTS].find(query).sort("createdAt", -1)]


@app.get("/swaps/{swap_id}")
def get_swap(swap_id: str, user: dict = Depends(get_current_user)):
    return _enrich_swap(_participant_swap(swap_id, user))


@app.put("/swaps/{swap_id}")
def update_swap(
    swap_id: str,
    payload: SwapActionIn,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    relay: RelayClient = Depends(get_relay),
):
    required, new_status, actor = SWAP_TRANSITIONS[payload.action]
    swap = db[SWAP_REQUESTS].find_one({"_id": oid(swap_id)})
    if not swap:
        raise HTTPException(404, detail="Swap request not found")

    allowed = {
        "to": (swap["toUserId"],),
        "from": (swap["fromUserId"],),
        "either": (swap["fromUserId"], swap["toUserId"]),
    }[actor]
    if user["id"] not in allowed:
        raise HTTPException(403, detail="Not allowed to perform this action")
    if swap["status"] != required:
        raise HTTPException(400, detail=f"Cannot {payload.action} a swap request that is {swap['status']}")

    # the status filter makes a concurrent loser match nothing
    result = db[SWAP_REQUESTS].update_one(
        {"_id": swap["_id"], "status": required},
        {"$set": {"status": new_status, "updatedAt": now_utc()}},
    )
    if result.modified_count == 0:
        raise HTTPException(404, detail="Swap request not found")

    counterpart = swap["toUserId"] if user["id"] == swap["fromUserId"] else swap["fromUserId"]
    background_tasks.add_task(relay.send_notification, counterpart, {
        "type": "swap_status",
        "message": f"{user.get('name') or 'Someone'} marked your swap request as {new_status}.",
        "swapId": swap_id,
        "status": new_status,
    })
    return {"message": f"Swap request {new_status} successfully", "status": new_status}


@app.delete("/swaps/{swap_id}")
def delete_swap(swap_id: str, user: dict = Depends(get_current_user)):
    swap = db[SWAP_REQUESTS].find_one({"_id": oid(swap_id)})
    if not swap:
        raise HTTPException(404, detail="Swap request not found")
    if swap["fromUserId"] != user["id"] or swap["status"] != "pending":
        raise HTTPException(403, detail="Cannot delete this swap request")
    result = db[SWAP_REQUESTS].delete_one({"_id": swap["_id"], "fromUserId": user["id"], "status": "pending"})
    if result.deleted_count == 0:
        raise HTTPException(404, detail="Swap request not found")
    return {"message": "Swap request deleted successfully"}


# -------------------------
# Ratings
# -------------------------
def recompute_user_rating(user_id: str):
    values = [r["rating"] for r in db[RATINGS].find({"ratedUserId": user_id}, {"rating": 1})]
    average = sum(values) / len(values) if values else 0.0
    db[USERS].update_one(
        {"_id": ObjectId(user_id)},
        {"$set": {"rating": average, "reviewCount": len(values), "updatedAt": now_utc()}},
    )
    return average, len(values)


def _populate_rating(r: dict) -> dict:
    r = to_out(r)
    r["rater"] = user_card(r["raterId"])
    r["ratedUser"] = user_card(r["ratedUserId"])
    swap = None
    if ObjectId.is_valid(r["swapRequestId"]):
        swap = db[SWAP_REQUESTS].find_one({"_id": ObjectId(r["swapRequestId"])}, {"offeredSkill": 1, "requestedSkill": 1})
    r["swapRequest"] = to_out(swap) if swap else None
    return r


@app.post("/ratings", status_code=201)
def create_rating(payload: RatingIn, user: dict = Depends(get_current_user)):
    swap = _participant_swap(payload.swapRequestId, user)
    if swap["status"] != "completed":
        raise HTTPException(400, detail="Only completed swaps can be rated")
    counterpart = swap["toUserId"] if user["id"] == swap["fromUserId"] else swap["fromUserId"]
    if payload.ratedUserId is not None and payload.ratedUserId != counterpart:
        raise HTTPException(400, detail="You can only rate the other participant of this swap")

    swap_id = str(swap["_id"])
    if db[RATINGS].find_one({"raterId": user["id"], "swapRequestId": swap_id}):
        raise HTTPException(409, detail="You have already rated this swap")
    try:
        rating_id = create_document(RATINGS, Rating(
            raterId=user["id"],
            ratedUserId=counterpart,
            swapRequestId=swap_id,
            rating=payload.rating,
            feedback=payload.feedback,
        ))
    except DuplicateKeyError:
        raise HTTPException(409, detail="You have already rated this swap")

    # second, separate write; a failure here leaves a stale aggregate
    recompute_user_rating(counterpart)
    return _populate_rating(db[RATINGS].find_one({"_id": ObjectId(rating_id)}))


@app.get("/ratings")
def list_recent_ratings(user: dict = Depends(get_current_user)):
    return [_populate_rating(r) for r in db[RATINGS].find().sort("createdAt", -1).limit(20)]


@app.get("/ratings/user/{user_id}")
def list_ratings_for_user(user_id: str):
    oid(user_id)
    return [_populate_rating(r) for r in db[RATINGS].find({"ratedUserId": user_id}).sort("createdAt", -1)]


# -------------------------
# Assistant
# -------------------------
@app.post("/assistant")
def ask_assistant(payload: AssistantIn, user: dict = Depends(get_current_user)):
    prompt = build_prompt(payload.message, user if payload.includeProfile else None)
    try:
        text = generate_reply(prompt)
    except AssistantError as e:
        logger.error("Gemini API error: %s", e)
        return JSONResponse(status_code=500, content={"aiText": ERROR_REPLY})
    return {"aiText": text or OFF_TOPIC_REPLY}


# -------------------------
# Admin
# -------------------------
@app.get("/admin/overview")
def admin_overview(user: dict = Depends(get_current_user)):
    if user.get("role") != "admin":
        raise HTTPException(403, detail="Admins only")
    swaps_by_status = {
        s: db[SWAP_REQUESTS].count_documents({"status": s})
        for s in ("pending", "accepted", "rejected", "completed", "cancelled")
    }
    return {
        "users": db[USERS].count_documents({}),
        "activeUsers": db[USERS].count_documents({"isActive": True}),
        "friendships": db[FRIENDSHIPS].count_documents({}),
        "messages": db[MESSAGES].count_documents({}),
        "swapRequests": db[SWAP_REQUESTS].count_documents({}),
        "swapRequestsByStatus": swaps_by_status,
        "ratings": db[RATINGS].count_documents({}),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
