from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from klearkarma.logging import get_logger
from klearkarma.service.authz import (
    Subject,
    authorize_ownership,
    authorize_permission,
    authorize_role,
    is_top_role,
)
from klearkarma.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from klearkarma.storage.errors import ConstraintViolation
from klearkarma.storage.models import (
    APPOINTMENTS,
    MESSAGES,
    PRODUCTS,
    REVIEWS,
    SERVICES,
    USERS,
    Appointment,
    AppointmentStatus,
    Message,
    ModerationStatus,
    Permission,
    Product,
    Record,
    Review,
    Role,
    Service,
    User,
    appointment_review_key,
    conversation_id_for,
    practitioner_slot_key,
    practitioner_slot_prefix,
)
from klearkarma.storage.records import RecordStore

logger = get_logger(__name__)

REVIEW_EDIT_WINDOW = timedelta(days=30)


def _newest_first(items: List[Any]) -> List[Any]:
    return sorted(items, key=lambda item: item.created_at, reverse=True)


R = TypeVar("R", bound=Record)


def _apply_changes(record: R, changes: Dict[str, Any]) -> R:
    """Validated partial update; a value the record model refuses is a 400."""
    try:
        return record.touched(**changes)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


def can_moderate(subject: Subject) -> bool:
    return is_top_role(subject) or Permission.CONTENT_MODERATE in subject.permissions


def _published(reviews: List[Review]) -> List[Review]:
    return [r for r in reviews if r.moderation_status != ModerationStatus.REJECTED]


class CatalogService:
    """Practitioner service offerings."""

    def __init__(self, records: RecordStore) -> None:
        self.records = records

    async def get(self, service_id: str) -> Service:
        service = await self.records.get(SERVICES, service_id)
        if not service:
            raise NotFoundError.resource("service", service_id)
        return service

    async def create(self, subject: Subject, fields: Dict[str, Any]) -> Service:
        authorize_role(subject, [Role.PRACTITIONER])
        service = Service(practitioner_id=subject.user_id, **fields)
        await self.records.insert(SERVICES, service)
        logger.info("service_created", service_id=service.id, practitioner_id=subject.user_id)
        return service

    async def list_by_practitioner(
        self, practitioner_id: str, *, include_inactive: bool = False, limit: int = 100
    ) -> List[Service]:
        items = await self.records.collect(
            SERVICES,
            SERVICES.prefix("by_practitioner", practitioner_id=practitioner_id),
            limit=limit,
        )
        return [s for s in items if include_inactive or s.active]

    async def list_by_category(self, category: str, *, limit: int = 100) -> List[Service]:
        items = await self.records.collect(
            SERVICES, SERVICES.prefix("by_category", category=category), limit=limit
        )
        return [s for s in items if s.active]

    async def update(
        self, subject: Subject, service_id: str, changes: Dict[str, Any]
    ) -> Service:
        service = await self.get(service_id)
        authorize_ownership(
            subject, service.practitioner_id, bypass_permission=Permission.PRACTITIONER_WRITE
        )
        if not changes:
            return service
        updated = _apply_changes(service, changes)
        await self.records.put(SERVICES, updated, previous=service)
        return updated

    async def deactivate(self, subject: Subject, service_id: str) -> Service:
        service = await self.get(service_id)
        authorize_ownership(
            subject, service.practitioner_id, bypass_permission=Permission.PRACTITIONER_WRITE
        )
        if not service.active:
            raise ConflictError("service already inactive")
        updated = service.touched(active=False)
        await self.records.put(SERVICES, updated, previous=service)
        logger.info("service_deactivated", service_id=service.id)
        return updated


# (from, to) -> who may perform it
_TRANSITIONS = {
    (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED): "practitioner",
    (AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED): "practitioner",
    (AppointmentStatus.PENDING, AppointmentStatus.CANCELLED): "participant",
    (AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED): "participant",
}


class AppointmentService:
    def __init__(self, records: RecordStore, catalog: CatalogService) -> None:
        self.records = records
        self.catalog = catalog

    async def _load(self, appointment_id: str) -> Appointment:
        appointment = await self.records.get(APPOINTMENTS, appointment_id)
        if not appointment:
            raise NotFoundError.resource("appointment", appointment_id)
        return appointment

    async def _slot_taken(self, practitioner_id: str, date: str, time: str) -> bool:
        slot = practitioner_slot_key(practitioner_id, date, time)
        holder_id = await self.records.get_raw(slot)
        if not holder_id:
            return False
        holder = await self.records.get(APPOINTMENTS, holder_id)
        # a dangling or cancelled holder frees the slot
        return holder is not None and holder.status != AppointmentStatus.CANCELLED

    async def book(
        self,
        subject: Subject,
        *,
        service_id: str,
        date: str,
        time: str,
        notes: Optional[str] = None,
    ) -> Appointment:
        service = await self.catalog.get(service_id)
        if not service.active:
            raise ValidationError("service is not available for booking")
        if service.practitioner_id == subject.user_id:
            raise ValidationError("cannot book your own service")
        if await self._slot_taken(service.practitioner_id, date, time):
            raise SlotUnavailableError(date, time)
        appointment = Appointment(
            customer_id=subject.user_id,
            practitioner_id=service.practitioner_id,
            service_id=service.id,
            date=date,
            time=time,
            duration_minutes=service.duration_minutes,
            price=service.price,
            notes=notes,
        )
        await self.records.insert(APPOINTMENTS, appointment)
        await self.records.put_raw(
            practitioner_slot_key(service.practitioner_id, date, time), appointment.id
        )
        logger.info(
            "appointment_booked",
            appointment_id=appointment.id,
            practitioner_id=service.practitioner_id,
        )
        return appointment

    async def get(self, subject: Subject, appointment_id: str) -> Appointment:
        appointment = await self._load(appointment_id)
        if subject.user_id not in (appointment.customer_id, appointment.practitioner_id):
            authorize_permission(subject, Permission.BOOKING_READ)
        return appointment

    async def list_for(
        self,
        subject: Subject,
        *,
        as_practitioner: bool = False,
        status: Optional[AppointmentStatus] = None,
        limit: int = 100,
    ) -> List[Appointment]:
        if as_practitioner:
            authorize_role(subject, [Role.PRACTITIONER])
            prefix = APPOINTMENTS.prefix("by_practitioner", practitioner_id=subject.user_id)
        else:
            prefix = APPOINTMENTS.prefix("by_customer", customer_id=subject.user_id)
        items = await self.records.collect(APPOINTMENTS, prefix, limit=limit)
        if status is not None:
            items = [a for a in items if a.status == status]
        return sorted(items, key=lambda a: (a.date, a.time))

    async def transition(
        self,
        subject: Subject,
        appointment_id: str,
        target: AppointmentStatus,
        *,
        reason: Optional[str] = None,
    ) -> Appointment:
        appointment = await self._load(appointment_id)
        target = AppointmentStatus(target)
        actor = _TRANSITIONS.get((appointment.status, target))
        if actor is None:
            actor = "participant" if target == AppointmentStatus.CANCELLED else "practitioner"

        if actor == "practitioner":
            authorize_ownership(
                subject, appointment.practitioner_id, bypass_permission=Permission.BOOKING_WRITE
            )
        elif subject.user_id not in (appointment.customer_id, appointment.practitioner_id):
            authorize_permission(subject, Permission.BOOKING_WRITE)

        if (appointment.status, target) not in _TRANSITIONS:
            raise InvalidTransitionError(appointment.status.value, target.value)

        changes: Dict[str, Any] = {"status": target}
        if target == AppointmentStatus.CANCELLED:
            changes.update(cancelled_by=subject.user_id, cancel_reason=reason)
        updated = appointment.touched(**changes)
        await self.records.put(APPOINTMENTS, updated, previous=appointment)
        if target == AppointmentStatus.CANCELLED:
            slot = practitioner_slot_key(
                appointment.practitioner_id, appointment.date, appointment.time
            )
            if await self.records.get_raw(slot) == appointment.id:
                await self.records.delete_raw(slot)
        logger.info(
            "appointment_status_changed",
            appointment_id=appointment.id,
            from_status=appointment.status.value,
            to_status=target.value,
        )
        return updated


class ReviewService:
    def __init__(self, records: RecordStore) -> None:
        self.records = records

    async def get(self, review_id: str) -> Review:
        review = await self.records.get(REVIEWS, review_id)
        if not review:
            raise NotFoundError.resource("review", review_id)
        return review

    async def get_visible(self, review_id: str, subject: Optional[Subject] = None) -> Review:
        """A rejected review reads as missing to everyone but its author and moderators."""
        review = await self.get(review_id)
        if review.moderation_status != ModerationStatus.REJECTED:
            return review
        if subject is not None and (
            subject.user_id == review.customer_id or can_moderate(subject)
        ):
            return review
        raise NotFoundError.resource("review", review_id)

    async def create(
        self,
        subject: Subject,
        *,
        appointment_id: str,
        rating: int,
        comment: str,
        title: Optional[str] = None,
        anonymous: bool = False,
    ) -> Review:
        appointment = await self.records.get(APPOINTMENTS, appointment_id)
        if not appointment:
            raise NotFoundError.resource("appointment", appointment_id)
        if appointment.customer_id != subject.user_id:
            raise ForbiddenError("only the customer of an appointment may review it")
        if appointment.status != AppointmentStatus.COMPLETED:
            raise ValidationError("only completed appointments can be reviewed")
        if await self.records.get_raw(appointment_review_key(appointment_id)) is not None:
            raise ConflictError("appointment already reviewed")

        customer = await self.records.get(USERS, subject.user_id)
        review = Review(
            appointment_id=appointment.id,
            customer_id=subject.user_id,
            practitioner_id=appointment.practitioner_id,
            service_id=appointment.service_id,
            rating=rating,
            title=title,
            comment=comment,
            anonymous=anonymous,
            customer_name=customer.full_name if customer else None,
        )
        try:
            await self.records.claim_raw(appointment_review_key(appointment.id), review.id)
        except ConstraintViolation as exc:
            raise ConflictError("appointment already reviewed") from exc
        await self.records.insert(REVIEWS, review)
        logger.info("review_created", review_id=review.id, appointment_id=appointment.id)
        return review

    async def list_by_practitioner(
        self, practitioner_id: str, *, limit: int = 100
    ) -> List[Review]:
        items = await self.records.collect(
            REVIEWS,
            REVIEWS.prefix("by_practitioner", practitioner_id=practitioner_id),
            limit=limit,
        )
        return _newest_first(_published(items))

    async def list_by_service(self, service_id: str, *, limit: int = 100) -> List[Review]:
        items = await self.records.collect(
            REVIEWS, REVIEWS.prefix("by_service", service_id=service_id), limit=limit
        )
        return _newest_first(_published(items))

    async def update(self, subject: Subject, review_id: str, changes: Dict[str, Any]) -> Review:
        review = await self.get(review_id)
        authorize_ownership(subject, review.customer_id)
        age = datetime.now(timezone.utc) - review.created_at
        if not is_top_role(subject) and age > REVIEW_EDIT_WINDOW:
            raise ValidationError("review can no longer be edited")
        if not changes:
            return review
        updated = _apply_changes(review, changes)
        await self.records.put(REVIEWS, updated, previous=review)
        return updated

    async def delete(self, subject: Subject, review_id: str) -> None:
        review = await self.get(review_id)
        authorize_ownership(
            subject, review.customer_id, bypass_permission=Permission.CONTENT_DELETE
        )
        await self.records.delete(REVIEWS, review)
        await self.records.delete_raw(appointment_review_key(review.appointment_id))
        logger.info("review_deleted", review_id=review.id, by=subject.user_id)

    # -- moderation --

    async def list_for_moderation(
        self,
        subject: Subject,
        *,
        status: Optional[ModerationStatus] = None,
        practitioner_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Review]:
        authorize_permission(subject, Permission.CONTENT_MODERATE)
        if practitioner_id:
            prefix = REVIEWS.prefix("by_practitioner", practitioner_id=practitioner_id)
        else:
            prefix = "review:"
        items = await self.records.collect(REVIEWS, prefix, limit=limit)
        if status is not None:
            items = [r for r in items if r.moderation_status == status]
        return _newest_first(items)

    async def moderate(
        self,
        subject: Subject,
        review_id: str,
        status: ModerationStatus,
        *,
        notes: Optional[str] = None,
    ) -> Review:
        authorize_permission(subject, Permission.CONTENT_MODERATE)
        review = await self.get(review_id)
        status = ModerationStatus(status)
        updated = review.touched(
            moderation_status=status,
            moderation_notes=notes if notes is not None else review.moderation_notes,
            moderated_by=subject.user_id,
            moderated_at=datetime.now(timezone.utc),
        )
        await self.records.put(REVIEWS, updated, previous=review)
        logger.info(
            "review_moderated",
            review_id=review.id,
            from_status=review.moderation_status.value,
            to_status=status.value,
            by=subject.user_id,
        )
        return updated

    async def moderation_stats(self, subject: Subject) -> Dict[str, int]:
        authorize_permission(subject, Permission.CONTENT_MODERATE)
        counts = {status.value: 0 for status in ModerationStatus}
        async for review in self.records.scan(REVIEWS, "review:"):
            counts[review.moderation_status.value] += 1
        counts["total"] = sum(counts.values())
        return counts


class MessageService:
    def __init__(self, records: RecordStore) -> None:
        self.records = records

    async def send(
        self,
        subject: Subject,
        *,
        recipient_id: str,
        content: str,
        appointment_id: Optional[str] = None,
    ) -> Message:
        if recipient_id == subject.user_id:
            raise ValidationError("cannot message yourself")
        recipient = await self.records.get(USERS, recipient_id)
        if not recipient or not recipient.active:
            raise NotFoundError.resource("recipient", recipient_id)
        message = Message(
            conversation_id=conversation_id_for(subject.user_id, recipient_id),
            sender_id=subject.user_id,
            recipient_id=recipient_id,
            content=content,
            appointment_id=appointment_id,
        )
        await self.records.insert(MESSAGES, message)
        logger.info("message_sent", message_id=message.id, conversation_id=message.conversation_id)
        return message

    async def list_conversation(
        self, subject: Subject, other_user_id: str, *, limit: int = 100
    ) -> List[Message]:
        conversation_id = conversation_id_for(subject.user_id, other_user_id)
        items = await self.records.collect(
            MESSAGES,
            MESSAGES.prefix("by_conversation", conversation_id=conversation_id),
            limit=limit,
        )
        return sorted(items, key=lambda m: m.created_at)

    async def list_inbox(self, subject: Subject, *, limit: int = 100) -> List[Message]:
        # sent and received copies share the user_messages:{user_id}: prefix
        items = await self.records.collect(
            MESSAGES, MESSAGES.prefix("by_sender", sender_id=subject.user_id), limit=limit
        )
        return _newest_first(items)

    async def mark_read(self, subject: Subject, message_id: str) -> Message:
        message = await self.records.get(MESSAGES, message_id)
        if not message:
            raise NotFoundError.resource("message", message_id)
        authorize_ownership(subject, message.recipient_id)
        if message.read:
            return message
        now = datetime.now(timezone.utc)
        updated = message.touched(read=True, read_at=now)
        await self.records.put(MESSAGES, updated, previous=message)
        return updated


_PRODUCT_SORTS = {
    "newest": (lambda p: p.created_at, True),
    "price_asc": (lambda p: p.price, False),
    "price_desc": (lambda p: p.price, True),
    "rating": (lambda p: p.rating, True),
    "name": (lambda p: p.name.lower(), False),
}


_CURATOR_LOCKED = frozenset({"verified", "curator_practitioner_id"})


class ProductService:
    def __init__(self, records: RecordStore) -> None:
        self.records = records

    async def get(self, product_id: str) -> Product:
        product = await self.records.get(PRODUCTS, product_id)
        if not product:
            raise NotFoundError.resource("product", product_id)
        return product

    async def search(
        self,
        *,
        category: Optional[str] = None,
        modality: Optional[str] = None,
        verified_only: bool = False,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        sort: str = "newest",
        limit: int = 50,
        scan_limit: Optional[int] = None,
    ) -> List[Product]:
        """Prefix scan, then filter and sort in memory."""
        if sort not in _PRODUCT_SORTS:
            raise ValidationError(
                "unknown sort", detail={"sort": sort, "allowed": sorted(_PRODUCT_SORTS)}
            )
        prefix = PRODUCTS.prefix("by_modality", modality=modality) if modality else "product:"
        results: List[Product] = []
        async for product in self.records.scan(PRODUCTS, prefix, limit=scan_limit):
            if category and product.category != category:
                continue
            if verified_only and not product.verified:
                continue
            if min_price is not None and product.price < min_price:
                continue
            if max_price is not None and product.price > max_price:
                continue
            results.append(product)
        key, reverse = _PRODUCT_SORTS[sort]
        results.sort(key=key, reverse=reverse)
        return results[:limit]

    async def create(self, subject: Subject, fields: Dict[str, Any]) -> Product:
        if Permission.PRODUCT_WRITE in subject.permissions or is_top_role(subject):
            product = Product(**fields)
        else:
            # practitioners may curate products under their own name only
            authorize_role(subject, [Role.PRACTITIONER])
            product = Product(
                **{**fields, "curator_practitioner_id": subject.user_id, "verified": False}
            )
        await self.records.insert(PRODUCTS, product)
        logger.info("product_created", product_id=product.id, by=subject.user_id)
        return product

    async def update(self, subject: Subject, product_id: str, changes: Dict[str, Any]) -> Product:
        product = await self.get(product_id)
        authorize_ownership(
            subject, product.curator_practitioner_id, bypass_permission=Permission.PRODUCT_WRITE
        )
        if Permission.PRODUCT_WRITE not in subject.permissions and not is_top_role(subject):
            changes = {k: v for k, v in changes.items() if k not in _CURATOR_LOCKED}
        if not changes:
            return product
        updated = _apply_changes(product, changes)
        await self.records.put(PRODUCTS, updated, previous=product)
        return updated

    async def delete(self, subject: Subject, product_id: str) -> None:
        authorize_permission(subject, Permission.PRODUCT_DELETE)
        product = await self.get(product_id)
        await self.records.delete(PRODUCTS, product)
        logger.info("product_deleted", product_id=product.id, by=subject.user_id)


@dataclass
class PractitionerProfile:
    practitioner: User
    services: List[Service] = field(default_factory=list)
    reviews: List[Review] = field(default_factory=list)

    @property
    def review_count(self) -> int:
        return len(self.reviews)

    @property
    def average_rating(self) -> Optional[float]:
        if not self.reviews:
            return None
        return round(sum(r.rating for r in self.reviews) / len(self.reviews), 2)


class PractitionerDirectory:
    """Public practitioner listing read from the role index."""

    def __init__(
        self,
        records: RecordStore,
        catalog: CatalogService,
        reviews: ReviewService,
    ) -> None:
        self.records = records
        self.catalog = catalog
        self.reviews = reviews

    async def _load(self, practitioner_id: str) -> User:
        user = await self.records.get(USERS, practitioner_id)
        if not user or user.role != Role.PRACTITIONER or not user.active:
            raise NotFoundError.resource("practitioner", practitioner_id)
        return user

    async def list(
        self,
        *,
        search: Optional[str] = None,
        verified_only: bool = False,
        limit: int = 100,
    ) -> List[User]:
        needle = search.strip().lower() if search else None
        results: List[User] = []
        prefix = USERS.prefix("by_role", role=Role.PRACTITIONER)
        async for user in self.records.scan(USERS, prefix):
            if not user.active:
                continue
            if verified_only and not user.verified:
                continue
            if needle and needle not in f"{user.full_name} {user.bio or ''}".lower():
                continue
            results.append(user)
        results.sort(key=lambda u: u.full_name.lower())
        return results[:limit]

    async def profile(
        self, practitioner_id: str, *, include_inactive: bool = False
    ) -> PractitionerProfile:
        practitioner = await self._load(practitioner_id)
        return PractitionerProfile(
            practitioner=practitioner,
            services=await self.catalog.list_by_practitioner(
                practitioner.id, include_inactive=include_inactive
            ),
            reviews=await self.reviews.list_by_practitioner(practitioner.id),
        )

    async def own_profile(self, subject: Subject) -> PractitionerProfile:
        authorize_role(subject, [Role.PRACTITIONER])
        return await self.profile(subject.user_id, include_inactive=True)

    async def booked_slots(self, practitioner_id: str, date: str) -> List[Appointment]:
        """Live bookings on ``date``, ordered by start time."""
        await self._load(practitioner_id)
        booked: List[Appointment] = []
        for key in await self.records.list_keys(practitioner_slot_prefix(practitioner_id, date)):
            holder_id = await self.records.get_raw(key)
            if not holder_id:
                continue
            holder = await self.records.get(APPOINTMENTS, holder_id)
            if holder is None or holder.status == AppointmentStatus.CANCELLED:
                continue
            booked.append(holder)
        return sorted(booked, key=lambda a: a.time)
