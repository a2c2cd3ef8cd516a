"""FastAPI application exposing the SecureBank endpoints."""
from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from typing import Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .accounts import AccountService, SignupRequest
from .cards import CardService, CardTokenizer
from .config import Settings, load_settings
from .database import Database
from .errors import BankError, NotFound, Unauthenticated
from .lifecycle import AccountLifecycle
from .models import PROFILE_FIELDS, Conversation, CreditCard, Message, Notification, User
from .notifications import MAX_MESSAGE_LENGTH, NotificationRelay
from .security import AuthContext, SessionAuth
from .sessions import SessionManager

logger = logging.getLogger("securebank.api")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEMO_HEADERS = {
    "X-Educational-Demo": "true",
    "X-Demo-Notice": "This site does not process real transactions or store sensitive information",
    "X-Demo-Warning": "DO NOT ENTER REAL CREDIT CARD INFORMATION OR PERSONAL DETAILS",
}


def _validate_email(value: str) -> str:
    stripped = value.strip().lower()
    if not _EMAIL_PATTERN.match(stripped):
        raise ValueError("Please enter a valid email")
    return stripped


class ProfileModel(BaseModel):
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    status: str
    is_admin: bool
    profile: ProfileModel
    created_at: datetime
    updated_at: datetime


class AdminUserResponse(UserResponse):
    unread_messages: int = 0


class UserSummary(BaseModel):
    id: int
    username: str
    is_admin: bool


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: str
    expires_at: datetime
    message: Optional[str] = None


class SignUpRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    confirm_password: Optional[str] = None
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, max_length=100)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        stripped = value.strip()
        if len(stripped) < 3:
            raise ValueError("Username must be at least 3 characters")
        return stripped

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _validate_email(value)

    @model_validator(mode="after")
    def _passwords_match(self):  # type: ignore[override]
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords don't match")
        return self

    def profile_fields(self) -> Dict[str, Optional[str]]:
        return {key: getattr(self, key) for key in PROFILE_FIELDS}


class SignInRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class PasswordResetRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=255)


class UpdateProfileRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)


class StatusChangeRequest(BaseModel):
    status: str = Field(..., min_length=1, max_length=32)
    message: Optional[str] = Field(default=None, max_length=MAX_MESSAGE_LENGTH)


class TemporaryPasswordResponse(BaseModel):
    user_id: int
    temporary_password: str


class StatsResponse(BaseModel):
    total_users: int
    pending_count: int
    approved_count: int
    unread_messages: int
    active_today: int


class CardResponse(BaseModel):
    user_id: int
    token: str
    brand: str
    last4: str
    expiry_month: int
    expiry_year: int
    cardholder_name: str
    is_verified: bool
    created_at: datetime
    updated_at: datetime


class UserDetailResponse(UserResponse):
    card: Optional[CardResponse] = None


class CardSubmitRequest(BaseModel):
    card_number: str = Field(..., min_length=12, max_length=32)
    expiry_month: int = Field(..., ge=1, le=12)
    expiry_year: int = Field(..., ge=0, le=9999)
    cvv: str = Field(..., min_length=3, max_length=4)
    cardholder_name: str = Field(..., min_length=1, max_length=100)


class CardVerifyRequest(BaseModel):
    is_verified: bool


class MessageResponse(BaseModel):
    id: int
    sender_id: int
    receiver_id: int
    content: str
    is_read: bool
    created_at: datetime


class SendMessageRequest(BaseModel):
    receiver_id: Optional[int] = None
    content: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)


class MarkMessagesReadRequest(BaseModel):
    partner_id: Optional[int] = None
    message_ids: Optional[List[int]] = None


class ConversationResponse(BaseModel):
    partner_id: int
    partner: Optional[UserSummary]
    last_message: MessageResponse
    unread_count: int


class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    read: bool
    created_at: datetime


class MarkNotificationsReadRequest(BaseModel):
    ids: Optional[List[int]] = None


class UpdatedResponse(BaseModel):
    updated: int


class UnreadCountResponse(BaseModel):
    unread: int


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        status=user.status.value,
        is_admin=user.is_admin,
        profile=ProfileModel(**{key: getattr(user.profile, key) for key in PROFILE_FIELDS}),
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def card_to_response(card: CreditCard) -> CardResponse:
    return CardResponse(
        user_id=card.user_id,
        token=card.token,
        brand=card.brand,
        last4=card.last4,
        expiry_month=card.expiry_month,
        expiry_year=card.expiry_year,
        cardholder_name=card.cardholder_name,
        is_verified=card.is_verified,
        created_at=card.created_at,
        updated_at=card.updated_at,
    )


def message_to_response(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        sender_id=message.sender_id,
        receiver_id=message.receiver_id,
        content=message.content,
        is_read=message.is_read,
        created_at=message.created_at,
    )


def conversation_to_response(conversation: Conversation) -> ConversationResponse:
    partner = conversation.partner
    return ConversationResponse(
        partner_id=conversation.partner_id,
        partner=(
            UserSummary(id=partner.id, username=partner.username, is_admin=partner.is_admin)
            if partner is not None
            else None
        ),
        last_message=message_to_response(conversation.last_message),
        unread_count=conversation.unread_count,
    )


def notification_to_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        title=notification.title,
        message=notification.message,
        read=notification.read,
        created_at=notification.created_at,
    )


def _trusted_proxy_hosts() -> list[str] | str:
    raw = os.getenv("BANK_TRUSTED_PROXIES")
    if not raw:
        return "127.0.0.1"
    hosts = [item.strip() for item in raw.split(",") if item.strip()]
    return hosts or "127.0.0.1"


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    if settings is None:
        settings = load_settings()
    if database is None:
        database = Database(settings.database_path)
    database.initialize()

    sessions = SessionManager(database, ttl=settings.session_ttl, clock=clock)
    relay = NotificationRelay(database)
    lifecycle = AccountLifecycle(database, relay, settings)
    accounts = AccountService(database, sessions, lifecycle, relay, settings)
    cards = CardService(database, CardTokenizer(settings.secret), relay)

    _, generated_password = accounts.bootstrap_admin()
    if generated_password is not None:
        logger.warning(
            "Generated password for bootstrap administrator %s: %s",
            settings.admin_username,
            generated_password,
        )

    app = FastAPI(
        title="SecureBank",
        description="Demonstration banking API with an admin approval workflow",
        version="1.0.0",
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts())
    app.state.settings = settings
    app.state.database = database
    app.state.sessions = sessions
    app.state.relay = relay
    app.state.lifecycle = lifecycle
    app.state.accounts = accounts

    if settings.demo_headers:

        @app.middleware("http")
        async def add_demo_headers(request: Request, call_next):
            response = await call_next(request)
            for header, value in DEMO_HEADERS.items():
                response.headers.setdefault(header, value)
            return response

    current_session = SessionAuth(database, sessions)
    active_session = SessionAuth(database, sessions, lifecycle=lifecycle)
    admin_session = SessionAuth(database, sessions, require_admin=True)

    @app.exception_handler(BankError)
    async def handle_bank_error(_: Request, exc: BankError):
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.post("/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
    async def signup(payload: SignUpRequest) -> AuthResponse:
        user, session = accounts.signup(
            SignupRequest(
                username=payload.username,
                email=payload.email,
                password=payload.password,
                profile=payload.profile_fields(),
            )
        )
        return AuthResponse(
            user=user_to_response(user),
            session_id=session.token,
            expires_at=session.expires_at,
            message="Account created successfully. Your account is under review.",
        )

    @app.post("/signin", response_model=AuthResponse)
    async def signin(payload: SignInRequest) -> AuthResponse:
        user, session = accounts.signin(payload.identifier, payload.password)
        return AuthResponse(
            user=user_to_response(user),
            session_id=session.token,
            expires_at=session.expires_at,
        )

    @app.post("/password-reset-requests", status_code=status.HTTP_202_ACCEPTED)
    async def request_password_reset(payload: PasswordResetRequest) -> Dict[str, str]:
        accounts.request_password_reset(payload.identifier)
        return {"message": "If the account exists, an administrator will contact you."}

    @app.post("/logout")
    async def logout(auth: AuthContext = Depends(current_session)) -> Dict[str, str]:
        accounts.logout(auth.session)
        return {"message": "Logged out successfully"}

    @app.get("/me", response_model=UserResponse)
    async def read_current_user(auth: AuthContext = Depends(current_session)) -> UserResponse:
        return user_to_response(auth.user)

    @app.put("/me", response_model=UserResponse)
    async def update_current_user(
        payload: UpdateProfileRequest,
        auth: AuthContext = Depends(active_session),
    ) -> UserResponse:
        updates = payload.model_dump(exclude_unset=True)
        email = updates.pop("email", None)
        updated = accounts.update_profile(auth.user, updates, email=email)
        return user_to_response(updated)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------
    @app.get("/admin/users", response_model=List[AdminUserResponse])
    async def list_users(auth: AuthContext = Depends(admin_session)) -> List[AdminUserResponse]:
        unread = database.unread_counts_by_sender(auth.user.id)
        return [
            AdminUserResponse(**user_to_response(user).model_dump(), unread_messages=unread.get(user.id, 0))
            for user in database.list_users()
        ]

    @app.get("/admin/users/{user_id}", response_model=UserDetailResponse)
    async def read_user(user_id: int, _: AuthContext = Depends(admin_session)) -> UserDetailResponse:
        user = database.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        card = database.get_credit_card(user_id)
        return UserDetailResponse(
            **user_to_response(user).model_dump(),
            card=card_to_response(card) if card is not None else None,
        )

    @app.put("/admin/users/{user_id}", response_model=UserResponse)
    async def change_user_status(
        user_id: int,
        payload: StatusChangeRequest,
        auth: AuthContext = Depends(admin_session),
    ) -> UserResponse:
        updated = lifecycle.transition(auth.user, user_id, payload.status, payload.message)
        return user_to_response(updated)

    @app.delete("/admin/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_user(user_id: int, auth: AuthContext = Depends(admin_session)) -> Response:
        accounts.delete_user(auth.user, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/admin/reset-password/{user_id}", response_model=TemporaryPasswordResponse)
    async def reset_password(user_id: int, auth: AuthContext = Depends(admin_session)) -> TemporaryPasswordResponse:
        temporary = accounts.reset_password(auth.user, user_id)
        return TemporaryPasswordResponse(user_id=user_id, temporary_password=temporary)

    @app.get("/admin/stats", response_model=StatsResponse)
    async def read_stats(auth: AuthContext = Depends(admin_session)) -> StatsResponse:
        stats = accounts.stats(auth.user, sessions.now())
        return StatsResponse(
            total_users=stats.total_users,
            pending_count=stats.pending_count,
            approved_count=stats.approved_count,
            unread_messages=stats.unread_messages,
            active_today=stats.active_today,
        )

    @app.get("/admin/cards", response_model=List[CardResponse])
    async def list_cards(_: AuthContext = Depends(admin_session)) -> List[CardResponse]:
        return [card_to_response(card) for card in database.list_credit_cards()]

    @app.put("/admin/cards/{user_id}", response_model=CardResponse)
    async def verify_card(
        user_id: int,
        payload: CardVerifyRequest,
        auth: AuthContext = Depends(admin_session),
    ) -> CardResponse:
        card = cards.verify(auth.user, user_id, payload.is_verified)
        return card_to_response(card)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------
    @app.get("/messages", response_model=List[MessageResponse])
    async def list_messages(
        partner_id: Optional[int] = None,
        auth: AuthContext = Depends(current_session),
    ) -> List[MessageResponse]:
        if partner_id is None:
            messages = database.list_messages_for_user(auth.user.id)
        else:
            messages = relay.thread(auth.user.id, partner_id)
        return [message_to_response(message) for message in messages]

    @app.post("/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
    async def send_message(
        payload: SendMessageRequest,
        auth: AuthContext = Depends(current_session),
    ) -> MessageResponse:
        message = relay.post_message(auth.user, payload.receiver_id, payload.content)
        return message_to_response(message)

    @app.put("/messages/read", response_model=UpdatedResponse)
    async def mark_messages_read(
        payload: MarkMessagesReadRequest,
        auth: AuthContext = Depends(current_session),
    ) -> UpdatedResponse:
        updated = database.mark_messages_read(
            auth.user.id,
            sender_id=payload.partner_id,
            ids=payload.message_ids,
        )
        return UpdatedResponse(updated=updated)

    @app.delete("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_message(message_id: int, auth: AuthContext = Depends(current_session)) -> Response:
        relay.delete_message(auth.user, message_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/conversations", response_model=List[ConversationResponse])
    async def list_conversations(auth: AuthContext = Depends(current_session)) -> List[ConversationResponse]:
        return [conversation_to_response(item) for item in relay.conversations(auth.user.id)]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    @app.get("/notifications", response_model=List[NotificationResponse])
    async def list_notifications(auth: AuthContext = Depends(current_session)) -> List[NotificationResponse]:
        return [notification_to_response(item) for item in database.list_notifications(auth.user.id)]

    @app.get("/notifications/unread-count", response_model=UnreadCountResponse)
    async def count_unread_notifications(auth: AuthContext = Depends(current_session)) -> UnreadCountResponse:
        return UnreadCountResponse(unread=database.count_unread_notifications(auth.user.id))

    @app.put("/notifications/read", response_model=UpdatedResponse)
    async def mark_notifications_read(
        payload: MarkNotificationsReadRequest,
        auth: AuthContext = Depends(current_session),
    ) -> UpdatedResponse:
        updated = database.mark_notifications_read(auth.user.id, payload.ids)
        return UpdatedResponse(updated=updated)

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------
    @app.post("/cards", response_model=CardResponse, status_code=status.HTTP_201_CREATED)
    async def submit_card(
        payload: CardSubmitRequest,
        auth: AuthContext = Depends(active_session),
    ) -> CardResponse:
        card = cards.submit(
            auth.user,
            card_number=payload.card_number,
            expiry_month=payload.expiry_month,
            expiry_year=payload.expiry_year,
            cvv=payload.cvv,
            cardholder_name=payload.cardholder_name,
            now=sessions.now(),
        )
        return card_to_response(card)

    @app.get("/cards/me", response_model=CardResponse)
    async def read_own_card(auth: AuthContext = Depends(current_session)) -> CardResponse:
        card = database.get_credit_card(auth.user.id)
        if card is None:
            raise NotFound("No card on file")
        return card_to_response(card)

    return app


__all__ = ["create_app"]
