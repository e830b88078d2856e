from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
import logging
import math
from typing import Callable, Protocol
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doorpro.core.config import Settings, get_settings
from doorpro.core.errors import DoorProError, IdentityNotFound, StorageError
from doorpro.domain.access import ACTION_METRICS, LimitedAction, MetricType, Role
from doorpro.persistence.repos import usage as usage_repo
from doorpro.persistence.repos import users as users_repo
from doorpro.services.auth.capabilities import Capability, normalize_role, role_allows


logger = logging.getLogger(__name__)

UNLIMITED = -1
LIMIT_CHECK_FAILED_REASON = "Unable to verify tier limits"

TIER_LIMITS: dict[str, dict[MetricType, int]] = {
    Role.FREE.value: {
        MetricType.CONTACTS: 50,
        MetricType.TERRITORIES: 1,
        MetricType.SCHEDULES: 10,
        MetricType.API_REQUESTS: 100,
    },
    Role.PRO.value: {
        MetricType.CONTACTS: 1000,
        MetricType.TERRITORIES: 10,
        MetricType.SCHEDULES: 100,
        MetricType.API_REQUESTS: 1000,
    },
    Role.ADMIN.value: {
        MetricType.CONTACTS: UNLIMITED,
        MetricType.TERRITORIES: UNLIMITED,
        MetricType.SCHEDULES: UNLIMITED,
        MetricType.API_REQUESTS: UNLIMITED,
    },
}

# Contacts and territories never reset; their single row spans this window.
LIFETIME_START = datetime(1970, 1, 1, tzinfo=timezone.utc)
LIFETIME_END = datetime(2099, 12, 31, tzinfo=timezone.utc)

_LIMIT_REASONS = {
    LimitedAction.CREATE_CONTACT: "Contact limit reached. Your {tier} plan allows {limit} contacts.",
    LimitedAction.CREATE_TERRITORY: "Territory limit reached. Your {tier} plan allows {limit} territories.",
    LimitedAction.CREATE_SCHEDULE: (
        "Monthly schedule limit reached. Your {tier} plan allows {limit} schedules per month."
    ),
    LimitedAction.API_REQUEST: (
        "Daily API request limit reached. Your {tier} plan allows {limit} requests per day."
    ),
}


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def period_for(metric_type: MetricType | str, now: datetime, tz: tzinfo = timezone.utc) -> tuple[datetime, datetime]:
    """Return the UTC [start, end) window a metric accumulates in at `now`.

    Daily and monthly windows begin at local midnight in `tz`; the returned
    bounds are normalized to UTC so equal windows compare equal in storage.
    """
    metric = MetricType(metric_type)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    if metric is MetricType.API_REQUESTS:
        start = datetime(local.year, local.month, local.day, tzinfo=tz)
        end = start + timedelta(days=1)
    elif metric is MetricType.SCHEDULES:
        start = datetime(local.year, local.month, 1, tzinfo=tz)
        if local.month == 12:
            end = datetime(local.year + 1, 1, 1, tzinfo=tz)
        else:
            end = datetime(local.year, local.month + 1, 1, tzinfo=tz)
    else:
        return LIFETIME_START, LIFETIME_END
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def limits_for_role(role: str | None) -> dict[MetricType, int]:
    # Unknown roles get free-tier limits.
    return TIER_LIMITS[normalize_role(role)]


def _within_limit(limit: int, used: int) -> bool:
    return limit == UNLIMITED or used < limit


def _percentage(used: int, limit: int) -> int:
    if limit == UNLIMITED or limit <= 0:
        return 0
    # Round half up so 0.5% reads as 1%.
    return int(math.floor(used * 100 / limit + 0.5))


class ResourceCounter(Protocol):
    async def count(
        self,
        session: AsyncSession,
        *,
        identity_id: int,
        metric_type: MetricType,
        period_start: datetime,
        period_end: datetime,
    ) -> int: ...


class MeteredResourceCounter:
    # Reads the accumulated usage_metrics row; domain CRUD may supply a table-counting counter instead.
    async def count(
        self,
        session: AsyncSession,
        *,
        identity_id: int,
        metric_type: MetricType,
        period_start: datetime,
        period_end: datetime,
    ) -> int:
        return await usage_repo.get_metric_value(
            session,
            identity_id=identity_id,
            metric_type=metric_type.value,
            period_start=period_start,
            period_end=period_end,
        )


@dataclass(frozen=True)
class MetricUsage:
    used: int
    limit: int
    remaining: int | None
    percentage: int


@dataclass(frozen=True)
class UsageSnapshot:
    identity_id: int
    tier: str
    metrics: dict[str, MetricUsage] = field(default_factory=dict)
    can_create_contact: bool = True
    can_create_territory: bool = True
    can_create_schedule: bool = True
    upgrade_available: bool = False


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    reason: str | None = None
    current_usage: int | None = None
    limit: int | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageMeter:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
        counter: ResourceCounter | None = None,
        settings: Settings | None = None,
    ) -> None:
        if session_factory is None:
            from doorpro.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        # Allow time injection for deterministic period rollover tests.
        self._time_provider = time_provider or _utc_now
        self._counter = counter or MeteredResourceCounter()
        resolved = settings or get_settings()
        self._tz = resolve_timezone(resolved.usage_timezone)

    def period(self, metric_type: MetricType | str) -> tuple[datetime, datetime]:
        return period_for(metric_type, self._time_provider(), self._tz)

    async def _count(self, session: AsyncSession, identity_id: int, metric_type: MetricType) -> int:
        start, end = self.period(metric_type)
        return int(
            await self._counter.count(
                session,
                identity_id=identity_id,
                metric_type=metric_type,
                period_start=start,
                period_end=end,
            )
        )

    async def get_usage(self, identity_id: int) -> UsageSnapshot:
        try:
            async with self._session_factory() as session:
                role = await users_repo.get_role(session, identity_id)
                if role is None:
                    raise IdentityNotFound(f"Identity {identity_id} not found")
                tier = normalize_role(role)
                limits = TIER_LIMITS[tier]
                metrics: dict[str, MetricUsage] = {}
                for metric_type in MetricType:
                    used = await self._count(session, identity_id, metric_type)
                    limit = limits[metric_type]
                    metrics[metric_type.value] = MetricUsage(
                        used=used,
                        limit=limit,
                        remaining=None if limit == UNLIMITED else max(limit - used, 0),
                        percentage=_percentage(used, limit),
                    )
        except SQLAlchemyError as exc:
            logger.error("usage_read_failed identity_id=%s", identity_id, exc_info=exc)
            raise StorageError("Unable to read usage") from exc

        return UsageSnapshot(
            identity_id=identity_id,
            tier=tier,
            metrics=metrics,
            can_create_contact=_within_limit(
                limits[MetricType.CONTACTS], metrics[MetricType.CONTACTS.value].used
            ),
            can_create_territory=_within_limit(
                limits[MetricType.TERRITORIES], metrics[MetricType.TERRITORIES.value].used
            ),
            can_create_schedule=_within_limit(
                limits[MetricType.SCHEDULES], metrics[MetricType.SCHEDULES.value].used
            ),
            upgrade_available=tier == Role.FREE.value,
        )

    async def check_limit(self, identity_id: int, action: LimitedAction | str) -> LimitDecision:
        # Pure read; any failure denies the action rather than letting it through unmetered.
        limited_action = LimitedAction(action)
        metric_type = ACTION_METRICS[limited_action]
        try:
            async with self._session_factory() as session:
                role = await users_repo.get_role(session, identity_id)
                if role is None:
                    raise IdentityNotFound(f"Identity {identity_id} not found")
                if role_allows(role, Capability.UNLIMITED_USAGE):
                    return LimitDecision(allowed=True)
                tier = normalize_role(role)
                limit = TIER_LIMITS[tier][metric_type]
                used = await self._count(session, identity_id, metric_type)
        except (DoorProError, SQLAlchemyError) as exc:
            logger.warning(
                "usage_limit_check_failed identity_id=%s action=%s",
                identity_id,
                limited_action.value,
                exc_info=exc,
            )
            return LimitDecision(allowed=False, reason=LIMIT_CHECK_FAILED_REASON)

        if _within_limit(limit, used):
            return LimitDecision(allowed=True, current_usage=used, limit=limit)
        return LimitDecision(
            allowed=False,
            reason=_LIMIT_REASONS[limited_action].format(tier=tier, limit=limit),
            current_usage=used,
            limit=limit,
        )

    async def record_usage(self, identity_id: int, metric_type: MetricType | str, delta: int = 1) -> None:
        metric = MetricType(metric_type)
        if delta < 1:
            raise ValueError("delta must be a positive integer")
        start, end = self.period(metric)
        # Two creators of the same period row race on the unique constraint; the loser retries as an update.
        for attempt in range(2):
            try:
                async with self._session_factory() as session:
                    existing = await usage_repo.get_metric(
                        session,
                        identity_id=identity_id,
                        metric_type=metric.value,
                        period_start=start,
                        period_end=end,
                    )
                    if existing is None:
                        await usage_repo.insert_metric(
                            session,
                            identity_id=identity_id,
                            metric_type=metric.value,
                            period_start=start,
                            period_end=end,
                            value=delta,
                            created_at=self._time_provider(),
                        )
                    else:
                        await usage_repo.add_to_metric(session, metric_id=existing.id, delta=delta)
                    await session.commit()
                return
            except IntegrityError as exc:
                if attempt == 0:
                    logger.info(
                        "usage_metric_insert_race identity_id=%s metric_type=%s",
                        identity_id,
                        metric.value,
                    )
                    continue
                raise StorageError("Unable to record usage") from exc
            except SQLAlchemyError as exc:
                logger.error(
                    "usage_record_failed identity_id=%s metric_type=%s",
                    identity_id,
                    metric.value,
                    exc_info=exc,
                )
                raise StorageError("Unable to record usage") from exc

    async def consume(self, identity_id: int, action: LimitedAction | str, delta: int = 1) -> LimitDecision:
        """Check and increment in one locked transaction.

        Unlike `check_limit` followed by `record_usage`, concurrent callers
        cannot overshoot the limit. Counts come from usage_metrics rows only.
        """
        limited_action = LimitedAction(action)
        metric = ACTION_METRICS[limited_action]
        if delta < 1:
            raise ValueError("delta must be a positive integer")
        start, end = self.period(metric)
        for attempt in range(2):
            try:
                async with self._session_factory() as session:
                    role = await users_repo.get_role(session, identity_id)
                    if role is None:
                        return LimitDecision(allowed=False, reason=LIMIT_CHECK_FAILED_REASON)
                    tier = normalize_role(role)
                    limit = TIER_LIMITS[tier][metric]
                    row = await usage_repo.get_metric(
                        session,
                        identity_id=identity_id,
                        metric_type=metric.value,
                        period_start=start,
                        period_end=end,
                        for_update=True,
                    )
                    if row is None:
                        row = await usage_repo.insert_metric(
                            session,
                            identity_id=identity_id,
                            metric_type=metric.value,
                            period_start=start,
                            period_end=end,
                            value=0,
                            created_at=self._time_provider(),
                        )
                    used = int(row.metric_value)
                    if limit != UNLIMITED and used + delta > limit:
                        await session.rollback()
                        return LimitDecision(
                            allowed=False,
                            reason=_LIMIT_REASONS[limited_action].format(tier=tier, limit=limit),
                            current_usage=used,
                            limit=limit,
                        )
                    await usage_repo.add_to_metric(session, metric_id=row.id, delta=delta)
                    await session.commit()
                return LimitDecision(allowed=True, current_usage=used + delta, limit=limit)
            except IntegrityError:
                if attempt == 0:
                    continue
                logger.warning("usage_consume_conflict identity_id=%s action=%s", identity_id, limited_action.value)
                return LimitDecision(allowed=False, reason=LIMIT_CHECK_FAILED_REASON)
            except SQLAlchemyError as exc:
                logger.warning(
                    "usage_consume_failed identity_id=%s action=%s",
                    identity_id,
                    limited_action.value,
                    exc_info=exc,
                )
                return LimitDecision(allowed=False, reason=LIMIT_CHECK_FAILED_REASON)
        return LimitDecision(allowed=False, reason=LIMIT_CHECK_FAILED_REASON)


_usage_meter: UsageMeter | None = None


def get_usage_meter() -> UsageMeter:
    global _usage_meter
    if _usage_meter is None:
        _usage_meter = UsageMeter()
    return _usage_meter


def reset_usage_meter() -> None:
    # Reset cached meter for deterministic tests.
    global _usage_meter
    _usage_meter = None
