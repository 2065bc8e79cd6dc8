from __future__ import annotations

from typing import Annotated, Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from klearkarma.api.schemas import (
    ID_PATTERN,
    KEY_SAFE_PATTERN,
    AppointmentCreateRequest,
    AppointmentStatusRequest,
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    MessageCreateRequest,
    ModerationRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProductCreateRequest,
    ProductUpdateRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ReviewCreateRequest,
    ReviewUpdateRequest,
    ServiceCreateRequest,
    ServiceUpdateRequest,
    TokenRefreshRequest,
    UpdateUserRoleRequest,
    UserActiveRequest,
    UserResponse,
    practitioner_view,
    record_view,
    review_view,
)
from klearkarma.logging import get_logger
from klearkarma.service.authz import (
    Subject,
    authorize_all_permissions,
    authorize_any_permission,
    authorize_ownership,
    authorize_role,
)
from klearkarma.service.marketplace import PractitionerProfile, can_moderate
from klearkarma.service.runtime import get_runtime
from klearkarma.storage.models import AppointmentStatus, ModerationStatus, Permission, Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# path ids are matched before they reach a store key
RecordId = Annotated[str, Path(pattern=ID_PATTERN)]


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


# -- dependencies --


async def get_subject(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Subject:
    runtime = get_runtime()
    cookie_token = request.cookies.get(runtime.settings.auth_cookie_name)
    return await runtime.auth.authenticate(authorization, cookie_token)


async def get_optional_subject(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[Subject]:
    runtime = get_runtime()
    cookie_token = request.cookies.get(runtime.settings.auth_cookie_name)
    return await runtime.auth.authenticate_optional(authorization, cookie_token)


def require_roles(*roles: Role) -> Callable[..., Any]:
    async def dependency(subject: Subject = Depends(get_subject)) -> Subject:
        authorize_role(subject, roles)
        return subject

    return dependency


def require_permissions(*permissions: Permission, mode: str = "all") -> Callable[..., Any]:
    if mode not in {"all", "any"}:
        raise ValueError("mode must be 'all' or 'any'")

    async def dependency(subject: Subject = Depends(get_subject)) -> Subject:
        if mode == "all":
            authorize_all_permissions(subject, permissions)
        else:
            authorize_any_permission(subject, permissions)
        return subject

    return dependency


# -- helpers --


def _set_auth_cookie(response: Response, access_token: str) -> None:
    runtime = get_runtime()
    response.set_cookie(
        runtime.settings.auth_cookie_name,
        access_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=runtime.settings.access_token_ttl_seconds,
        path="/",
    )


def _auth_payload(user: User, tokens: Dict[str, Any]) -> AuthResponse:
    return AuthResponse(
        user_id=user.id,
        role=user.role.value,
        verified=user.verified,
        access_token=tokens["access_token"],
        refresh_token=tokens["refresh_token"],
        token_type=tokens.get("token_type", "bearer"),
        expires_in=tokens["expires_in"],
    )


# -- auth --


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a customer or practitioner account.

    Returns an access/refresh pair. An email verification token is issued;
    delivery is out of band, so the token is only echoed back in TEST_MODE.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    runtime = get_runtime()
    user, tokens, verification_token = await runtime.auth.register(
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        role=Role(body.role),
        phone=body.phone,
    )
    _set_auth_cookie(response, tokens["access_token"])
    data = _auth_payload(user, tokens).model_dump()
    if runtime.settings.test_mode:
        data["email_verification_token"] = verification_token
    return Envelope(status="ok", data=data)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is deactivated
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(body.email, body.password)
    _set_auth_cookie(response, tokens["access_token"])
    return Envelope(status="ok", data=_auth_payload(user, tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, response: Response):
    """Rotate the refresh token. The presented token stops working."""
    runtime = get_runtime()
    user, tokens = await runtime.auth.refresh(body.refresh_token)
    _set_auth_cookie(response, tokens["access_token"])
    return Envelope(status="ok", data=_auth_payload(user, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    await runtime.auth.logout(subject)
    response.delete_cookie(runtime.settings.auth_cookie_name, path="/")
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    user = await runtime.auth.complete_email_verification(body.token)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/request-email-verification", response_model=Envelope, tags=["auth"])
async def request_email_verification(subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    token = await runtime.auth.request_email_verification(subject)
    data: Dict[str, Any] = {"message": "verification email sent"}
    if runtime.settings.test_mode:
        data["email_verification_token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    """Always answers 200 so callers cannot tell which emails are registered."""
    runtime = get_runtime()
    token = await runtime.auth.request_password_reset(body.email)
    data: Dict[str, Any] = {
        "message": "if the account exists, a password reset email has been sent"
    }
    if runtime.settings.test_mode and token:
        data["reset_token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password has been reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    subject: Subject = Depends(get_subject),
):
    runtime = get_runtime()
    tokens = await runtime.auth.change_password(
        subject, body.current_password, body.new_password
    )
    user = await runtime.auth.get_user(subject.user_id)
    _set_auth_cookie(response, tokens["access_token"])
    return Envelope(status="ok", data=_auth_payload(user, tokens))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    user = await runtime.auth.get_user(subject.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- users --


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_me(body: ProfileUpdateRequest, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(subject, body.model_dump(exclude_unset=True))
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_profile(user_id: RecordId, subject: Subject = Depends(get_subject)):
    authorize_ownership(subject, user_id, bypass_permission=Permission.USER_READ)
    runtime = get_runtime()
    user = await runtime.auth.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- practitioners --


def _profile_view(profile: PractitionerProfile) -> Dict[str, Any]:
    return {
        "practitioner": practitioner_view(profile.practitioner),
        "services": [record_view(s) for s in profile.services],
        "reviews": [review_view(r) for r in profile.reviews],
        "average_rating": profile.average_rating,
        "review_count": profile.review_count,
    }


@router.get("/practitioners", response_model=Envelope, tags=["practitioners"])
async def list_practitioners(
    search: Optional[str] = Query(None, max_length=100),
    verified: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
):
    runtime = get_runtime()
    items = await runtime.practitioners.list(search=search, verified_only=verified, limit=limit)
    return Envelope(status="ok", data={"items": [practitioner_view(u) for u in items]})


@router.get("/practitioners/me", response_model=Envelope, tags=["practitioners"])
async def my_practitioner_profile(subject: Subject = Depends(require_roles(Role.PRACTITIONER))):
    """Own directory profile, inactive services included."""
    runtime = get_runtime()
    profile = await runtime.practitioners.own_profile(subject)
    return Envelope(status="ok", data=_profile_view(profile))


@router.get("/practitioners/{practitioner_id}", response_model=Envelope, tags=["practitioners"])
async def get_practitioner(practitioner_id: RecordId):
    runtime = get_runtime()
    profile = await runtime.practitioners.profile(practitioner_id)
    return Envelope(status="ok", data=_profile_view(profile))


@router.get(
    "/practitioners/{practitioner_id}/availability",
    response_model=Envelope,
    tags=["practitioners"],
)
async def get_practitioner_availability(
    practitioner_id: RecordId,
    date: str = Query(..., pattern=r"^\d{4}-\d{2}-\d{2}$"),
):
    """Booked slots on ``date``; any other start time is open."""
    runtime = get_runtime()
    booked = await runtime.practitioners.booked_slots(practitioner_id, date)
    data = {
        "practitioner_id": practitioner_id,
        "date": date,
        "booked_slots": [
            {"time": a.time, "duration_minutes": a.duration_minutes} for a in booked
        ],
    }
    return Envelope(status="ok", data=data)


# -- services --


@router.post("/services", response_model=Envelope, status_code=201, tags=["services"])
async def create_service(
    body: ServiceCreateRequest,
    subject: Subject = Depends(require_roles(Role.PRACTITIONER)),
):
    runtime = get_runtime()
    service = await runtime.catalog.create(subject, body.model_dump())
    return Envelope(status="ok", data=record_view(service))


@router.get("/services", response_model=Envelope, tags=["services"])
async def list_services(
    practitioner_id: Optional[str] = Query(None, pattern=ID_PATTERN),
    category: Optional[str] = Query(None, pattern=KEY_SAFE_PATTERN),
    limit: int = Query(100, ge=1, le=500),
):
    runtime = get_runtime()
    if practitioner_id:
        items = await runtime.catalog.list_by_practitioner(practitioner_id, limit=limit)
    elif category:
        items = await runtime.catalog.list_by_category(category.strip().lower(), limit=limit)
    else:
        raise _http_error(
            "validation_error", "practitioner_id or category is required", status_code=400
        )
    return Envelope(status="ok", data={"items": [record_view(s) for s in items]})


@router.get("/services/{service_id}", response_model=Envelope, tags=["services"])
async def get_service(service_id: RecordId):
    runtime = get_runtime()
    service = await runtime.catalog.get(service_id)
    return Envelope(status="ok", data=record_view(service))


@router.patch("/services/{service_id}", response_model=Envelope, tags=["services"])
async def update_service(
    service_id: RecordId,
    body: ServiceUpdateRequest,
    subject: Subject = Depends(get_subject),
):
    runtime = get_runtime()
    service = await runtime.catalog.update(
        subject, service_id, body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=record_view(service))


@router.post("/services/{service_id}/deactivate", response_model=Envelope, tags=["services"])
async def deactivate_service(service_id: RecordId, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    service = await runtime.catalog.deactivate(subject, service_id)
    return Envelope(status="ok", data=record_view(service))


# -- appointments --


@router.post("/appointments", response_model=Envelope, status_code=201, tags=["appointments"])
async def book_appointment(
    body: AppointmentCreateRequest, subject: Subject = Depends(get_subject)
):
    runtime = get_runtime()
    appointment = await runtime.appointments.book(
        subject,
        service_id=body.service_id,
        date=body.date,
        time=body.time,
        notes=body.notes,
    )
    return Envelope(status="ok", data=record_view(appointment))


@router.get("/appointments", response_model=Envelope, tags=["appointments"])
async def list_appointments(
    view: str = Query("customer", pattern="^(customer|practitioner)$"),
    status: Optional[AppointmentStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    subject: Subject = Depends(get_subject),
):
    runtime = get_runtime()
    items = await runtime.appointments.list_for(
        subject, as_practitioner=view == "practitioner", status=status, limit=limit
    )
    return Envelope(status="ok", data={"items": [record_view(a) for a in items]})


@router.get("/appointments/{appointment_id}", response_model=Envelope, tags=["appointments"])
async def get_appointment(appointment_id: RecordId, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    appointment = await runtime.appointments.get(subject, appointment_id)
    return Envelope(status="ok", data=record_view(appointment))


@router.post(
    "/appointments/{appointment_id}/status", response_model=Envelope, tags=["appointments"]
)
async def update_appointment_status(
    appointment_id: RecordId,
    body: AppointmentStatusRequest,
    subject: Subject = Depends(get_subject),
):
    runtime = get_runtime()
    appointment = await runtime.appointments.transition(
        subject, appointment_id, body.status, reason=body.reason
    )
    return Envelope(status="ok", data=record_view(appointment))


# -- reviews --


@router.post("/reviews", response_model=Envelope, status_code=201, tags=["reviews"])
async def create_review(body: ReviewCreateRequest, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    review = await runtime.reviews.create(
        subject,
        appointment_id=body.appointment_id,
        rating=body.rating,
        comment=body.comment,
        title=body.title,
        anonymous=body.anonymous,
    )
    return Envelope(status="ok", data=review_view(review))


@router.get("/reviews", response_model=Envelope, tags=["reviews"])
async def list_reviews(
    practitioner_id: Optional[str] = Query(None, pattern=ID_PATTERN),
    service_id: Optional[str] = Query(None, pattern=ID_PATTERN),
    limit: int = Query(100, ge=1, le=500),
):
    runtime = get_runtime()
    if practitioner_id:
        items = await runtime.reviews.list_by_practitioner(practitioner_id, limit=limit)
    elif service_id:
        items = await runtime.reviews.list_by_service(service_id, limit=limit)
    else:
        raise _http_error(
            "validation_error", "practitioner_id or service_id is required", status_code=400
        )
    return Envelope(status="ok", data={"items": [review_view(r) for r in items]})


@router.get("/reviews/{review_id}", response_model=Envelope, tags=["reviews"])
async def get_review(
    review_id: RecordId, subject: Optional[Subject] = Depends(get_optional_subject)
):
    """Public; the author still sees their own name on an anonymous review."""
    runtime = get_runtime()
    review = await runtime.reviews.get_visible(review_id, subject)
    if subject is not None and subject.user_id == review.customer_id:
        return Envelope(status="ok", data=record_view(review))
    moderator = subject is not None and can_moderate(subject)
    return Envelope(status="ok", data=review_view(review, moderator=moderator))


@router.patch("/reviews/{review_id}", response_model=Envelope, tags=["reviews"])
async def update_review(
    review_id: RecordId, body: ReviewUpdateRequest, subject: Subject = Depends(get_subject)
):
    runtime = get_runtime()
    review = await runtime.reviews.update(
        subject, review_id, body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=review_view(review))


@router.delete("/reviews/{review_id}", response_model=Envelope, tags=["reviews"])
async def delete_review(review_id: RecordId, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    await runtime.reviews.delete(subject, review_id)
    return Envelope(status="ok", data={"id": review_id, "deleted": True})


# -- messages --


@router.post("/messages", response_model=Envelope, status_code=201, tags=["messages"])
async def send_message(body: MessageCreateRequest, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    message = await runtime.messages.send(
        subject,
        recipient_id=body.recipient_id,
        content=body.content,
        appointment_id=body.appointment_id,
    )
    return Envelope(status="ok", data=record_view(message))


@router.get("/messages", response_model=Envelope, tags=["messages"])
async def list_messages(
    with_user: Optional[str] = Query(None, pattern=ID_PATTERN),
    limit: int = Query(100, ge=1, le=500),
    subject: Subject = Depends(get_subject),
):
    """Own inbox, or the conversation with ``with_user`` when given."""
    runtime = get_runtime()
    if with_user:
        items = await runtime.messages.list_conversation(subject, with_user, limit=limit)
    else:
        items = await runtime.messages.list_inbox(subject, limit=limit)
    return Envelope(status="ok", data={"items": [record_view(m) for m in items]})


@router.post("/messages/{message_id}/read", response_model=Envelope, tags=["messages"])
async def mark_message_read(message_id: RecordId, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    message = await runtime.messages.mark_read(subject, message_id)
    return Envelope(status="ok", data=record_view(message))


# -- products --


@router.get("/products", response_model=Envelope, tags=["products"])
async def search_products(
    category: Optional[str] = Query(None, pattern=KEY_SAFE_PATTERN),
    modality: Optional[str] = Query(None, pattern=KEY_SAFE_PATTERN),
    verified: bool = Query(False),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    sort: str = Query("newest"),
    limit: int = Query(50, ge=1, le=200),
):
    runtime = get_runtime()
    items = await runtime.products.search(
        category=category.strip().lower() if category else None,
        modality=modality.strip().lower() if modality else None,
        verified_only=verified,
        min_price=min_price,
        max_price=max_price,
        sort=sort,
        limit=limit,
    )
    return Envelope(status="ok", data={"items": [record_view(p) for p in items]})


@router.get("/products/{product_id}", response_model=Envelope, tags=["products"])
async def get_product(product_id: RecordId):
    runtime = get_runtime()
    product = await runtime.products.get(product_id)
    return Envelope(status="ok", data=record_view(product))


@router.post("/products", response_model=Envelope, status_code=201, tags=["products"])
async def create_product(body: ProductCreateRequest, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    product = await runtime.products.create(subject, body.model_dump())
    return Envelope(status="ok", data=record_view(product))


@router.patch("/products/{product_id}", response_model=Envelope, tags=["products"])
async def update_product(
    product_id: RecordId, body: ProductUpdateRequest, subject: Subject = Depends(get_subject)
):
    runtime = get_runtime()
    product = await runtime.products.update(
        subject, product_id, body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=record_view(product))


@router.delete("/products/{product_id}", response_model=Envelope, tags=["products"])
async def delete_product(product_id: RecordId, subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    await runtime.products.delete(subject, product_id)
    return Envelope(status="ok", data={"id": product_id, "deleted": True})


# -- admin --


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    role: Optional[Role] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    subject: Subject = Depends(require_permissions(Permission.USER_READ)),
):
    runtime = get_runtime()
    users = await runtime.auth.list_users(role=role, limit=limit)
    return Envelope(
        status="ok", data={"items": [UserResponse.from_user(u) for u in users]}
    )


@router.post("/admin/users/{user_id}/active", response_model=Envelope, tags=["admin"])
async def admin_set_active(
    user_id: RecordId,
    body: UserActiveRequest,
    subject: Subject = Depends(require_permissions(Permission.USER_WRITE)),
):
    if user_id == subject.user_id and not body.active:
        raise _http_error("validation_error", "cannot deactivate yourself", status_code=400)
    runtime = get_runtime()
    user = await runtime.auth.set_active(user_id, body.active)
    logger.info(
        "admin_user_active_changed", admin_id=subject.user_id, user_id=user_id, active=body.active
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: RecordId,
    body: UpdateUserRoleRequest,
    subject: Subject = Depends(require_roles(Role.SUPERADMIN)),
):
    runtime = get_runtime()
    user = await runtime.auth.set_role(user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/admin/moderation/reviews", response_model=Envelope, tags=["admin"])
async def moderation_queue(
    status: Optional[ModerationStatus] = Query(None),
    practitioner_id: Optional[str] = Query(None, pattern=ID_PATTERN),
    limit: int = Query(100, ge=1, le=500),
    subject: Subject = Depends(get_subject),
):
    runtime = get_runtime()
    items = await runtime.reviews.list_for_moderation(
        subject, status=status, practitioner_id=practitioner_id, limit=limit
    )
    return Envelope(
        status="ok", data={"items": [review_view(r, moderator=True) for r in items]}
    )


@router.post("/admin/moderation/reviews/{review_id}", response_model=Envelope, tags=["admin"])
async def moderate_review(
    review_id: RecordId,
    body: ModerationRequest,
    subject: Subject = Depends(get_subject),
):
    runtime = get_runtime()
    review = await runtime.reviews.moderate(subject, review_id, body.status, notes=body.notes)
    return Envelope(status="ok", data=review_view(review, moderator=True))


@router.get("/admin/moderation/stats", response_model=Envelope, tags=["admin"])
async def moderation_stats(subject: Subject = Depends(get_subject)):
    runtime = get_runtime()
    counts = await runtime.reviews.moderation_stats(subject)
    return Envelope(status="ok", data=counts)
