"""
Benefit schedule engine.

A confirmed purchase gets one schedule. Days are laid out in cycles of
`benefit_days` payout days followed by `pause_days` pause days. Release is
driven from outside (one call per due day, usually from the sweep) so
`release_day` must be safe to call any number of times for the same day.

Releasing a payout day is a three step affair:

    1. claim the day on the schedule (pending -> processing) with the
       amount clamped against the cap, including amounts other in-flight
       claims already hold;
    2. credit the ledger;
    3. mark the day released and bump the counters.

A failed credit puts the day back to pending and re-raises, so a day is
never marked released without its ledger entry.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from loguru import logger

from .config import Settings, get_settings
from .errors import (
    DayNotDueError,
    InvalidStateTransitionError,
    LedgerServiceError,
    RecordNotFoundError,
    ScheduleAlreadyExistsError,
    ScheduleNotActiveError,
    TransientLedgerError,
    ValidationError,
)
from .models import (
    ZERO,
    BenefitSchedule,
    DayRelease,
    DayState,
    DayStatus,
    LedgerEntry,
    Purchase,
    ReasonCode,
    ScheduleStatus,
    SweepResult,
    quantize_money,
)
from .service import BalanceLedger
from .storage import SCHEDULES, ConcurrencyConflict, DuplicateKeyError, InMemoryStorage


class BenefitScheduleEngine:
    def __init__(
        self,
        ledger: BalanceLedger,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        on_completed: Optional[Callable[[BenefitSchedule], None]] = None,
    ):
        self.ledger = ledger
        self.storage = storage or ledger.storage
        self.settings = settings or get_settings()
        self.on_completed = on_completed

    def create_for_purchase(
        self, purchase: Purchase, now: Optional[datetime] = None
    ) -> BenefitSchedule:
        """Create the schedule for a confirmed purchase.

        The schedule is keyed by the purchase id, so a second call for the
        same purchase fails instead of creating a parallel schedule.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        package = purchase.package
        schedule = BenefitSchedule(
            id=purchase.id,
            purchase_id=purchase.id,
            user_id=purchase.user_id,
            currency=purchase.currency,
            principal=purchase.principal,
            daily_rate=package.daily_rate,
            daily_amount=quantize_money(purchase.principal * package.daily_rate),
            benefit_days=package.benefit_days,
            pause_days=package.pause_days,
            total_cycles=package.total_cycles,
            cap_percent=package.cap_percent,
            start_at=purchase.confirmed_at or now,
            created_at=now,
        )
        try:
            schedule = self.storage.insert(SCHEDULES, schedule)
        except DuplicateKeyError:
            raise ScheduleAlreadyExistsError(
                f"Purchase {purchase.id} already has a benefit schedule"
            )

        logger.info(
            f"Benefit schedule created schedule={schedule.id} user={schedule.user_id} "
            f"principal={schedule.principal} daily={schedule.daily_amount} "
            f"days={schedule.total_days} cap={schedule.cap_amount}"
        )
        return schedule

    def get_schedule(self, schedule_id: UUID) -> BenefitSchedule:
        schedule = self.storage.get(SCHEDULES, schedule_id)
        if schedule is None:
            raise RecordNotFoundError(f"Benefit schedule {schedule_id} not found")
        return schedule

    def list_for_user(self, user_id: UUID) -> list[BenefitSchedule]:
        schedules = self.storage.find(SCHEDULES, lambda s: s.user_id == user_id)
        return sorted(schedules, key=lambda s: s.created_at)

    def due_at(self, schedule: BenefitSchedule, day_index: int) -> datetime:
        return schedule.start_at + timedelta(days=day_index + 1)

    def release_day(
        self,
        schedule_id: UUID,
        day_index: int,
        as_of: Optional[datetime] = None,
    ) -> DayRelease:
        if as_of is None:
            as_of = datetime.now(timezone.utc)

        for _ in range(self.settings.cas_max_retries):
            schedule = self.get_schedule(schedule_id)
            if not 0 <= day_index < schedule.total_days:
                raise ValidationError(
                    f"Day {day_index} is outside schedule {schedule_id} "
                    f"(0..{schedule.total_days - 1})"
                )

            state = schedule.day_state(day_index)
            if state.status in (DayStatus.RELEASED, DayStatus.SKIPPED):
                return self._result(schedule, day_index, state, already_processed=True)
            if state.status == DayStatus.PROCESSING:
                return self._result(schedule, day_index, state, in_progress=True)

            if schedule.status != ScheduleStatus.ACTIVE:
                raise ScheduleNotActiveError(
                    f"Schedule {schedule_id} is {schedule.status.value}"
                )
            if self.due_at(schedule, day_index) > as_of:
                raise DayNotDueError(
                    f"Day {day_index} of schedule {schedule_id} is due at "
                    f"{self.due_at(schedule, day_index).isoformat()}"
                )

            if schedule.is_pause_day(day_index):
                schedule.status_by_day[day_index] = DayState(
                    status=DayStatus.SKIPPED, released_at=as_of
                )
                try:
                    schedule = self.storage.compare_and_set(SCHEDULES, schedule)
                except ConcurrencyConflict:
                    continue
                logger.debug(f"Pause day skipped schedule={schedule_id} day={day_index}")
                return self._result(schedule, day_index, schedule.status_by_day[day_index])

            in_flight = schedule.amount_in_flight
            headroom = schedule.cap_amount - schedule.amount_released - in_flight
            candidate = min(schedule.daily_amount, headroom)

            if candidate <= ZERO:
                if in_flight > ZERO:
                    # Other claims may still fail and free the headroom.
                    return self._result(schedule, day_index, state, in_progress=True)
                schedule.status_by_day[day_index] = DayState(
                    status=DayStatus.SKIPPED, released_at=as_of, error="cap reached"
                )
                self._complete(schedule, as_of)
                try:
                    schedule = self.storage.compare_and_set(SCHEDULES, schedule)
                except ConcurrencyConflict:
                    continue
                logger.info(
                    f"Benefit cap reached schedule={schedule_id} "
                    f"released={schedule.amount_released}"
                )
                self._notify_completed(schedule)
                return self._result(schedule, day_index, schedule.status_by_day[day_index])

            schedule.status_by_day[day_index] = DayState(
                status=DayStatus.PROCESSING, amount=candidate
            )
            try:
                schedule = self.storage.compare_and_set(SCHEDULES, schedule)
            except ConcurrencyConflict:
                continue
            break
        else:
            raise TransientLedgerError(
                f"Could not claim day {day_index} of schedule {schedule_id}"
            )

        try:
            entry = self.ledger.adjust(
                schedule.user_id,
                schedule.currency,
                candidate,
                ReasonCode.DAILY_BENEFIT,
                reference_id=schedule.id,
                metadata={
                    "day_index": day_index,
                    "cycle": day_index // schedule.cycle_length + 1,
                    "day_in_cycle": day_index % schedule.cycle_length + 1,
                },
                now=as_of,
            )
        except LedgerServiceError as e:
            logger.error(
                f"Benefit credit failed schedule={schedule_id} day={day_index} error={e}"
            )
            self._revert_claim(schedule_id, day_index, str(e))
            raise

        return self._mark_released(schedule_id, day_index, entry, as_of)

    def release_due(self, as_of: Optional[datetime] = None) -> SweepResult:
        """Release every due day of every active schedule, oldest first."""
        if as_of is None:
            as_of = datetime.now(timezone.utc)

        result = SweepResult()
        active = self.storage.find(SCHEDULES, lambda s: s.status == ScheduleStatus.ACTIVE)
        for schedule in sorted(active, key=lambda s: s.start_at):
            for day_index in range(schedule.total_days):
                if self.due_at(schedule, day_index) > as_of:
                    break
                if schedule.day_state(day_index).status != DayStatus.PENDING:
                    continue
                try:
                    release = self.release_day(schedule.id, day_index, as_of)
                except ScheduleNotActiveError:
                    break
                except LedgerServiceError as e:
                    logger.exception(
                        f"Benefit release failed schedule={schedule.id} day={day_index}"
                    )
                    result.failed += 1
                    result.errors.append(f"{schedule.id}:{day_index}: {e}")
                    break

                result.processed += 1
                if release.already_processed or release.in_progress:
                    continue
                if release.status == DayStatus.RELEASED:
                    result.released += 1
                    result.amount += release.amount
                else:
                    result.skipped += 1
                if release.schedule_status != ScheduleStatus.ACTIVE:
                    break

        logger.info(
            f"Benefit sweep as_of={as_of.isoformat()} processed={result.processed} "
            f"released={result.released} skipped={result.skipped} "
            f"failed={result.failed} amount={result.amount}"
        )
        return result

    def pause(self, schedule_id: UUID) -> BenefitSchedule:
        return self._transition(schedule_id, {ScheduleStatus.ACTIVE}, ScheduleStatus.PAUSED)

    def resume(self, schedule_id: UUID) -> BenefitSchedule:
        return self._transition(schedule_id, {ScheduleStatus.PAUSED}, ScheduleStatus.ACTIVE)

    def cancel(self, schedule_id: UUID) -> BenefitSchedule:
        return self._transition(
            schedule_id,
            {ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED},
            ScheduleStatus.CANCELLED,
        )

    def update_cap(
        self,
        schedule_id: UUID,
        cap_percent: Decimal,
        now: Optional[datetime] = None,
    ) -> BenefitSchedule:
        if now is None:
            now = datetime.now(timezone.utc)
        cap_percent = Decimal(cap_percent)
        if not ZERO <= cap_percent <= Decimal("1000"):
            raise ValidationError("Cap percent must be between 0 and 1000")

        for _ in range(self.settings.cas_max_retries):
            schedule = self.get_schedule(schedule_id)
            if schedule.status in (ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED):
                raise InvalidStateTransitionError(
                    f"Cannot change the cap of a {schedule.status.value} schedule"
                )
            committed = schedule.amount_released + schedule.amount_in_flight
            new_cap = quantize_money(schedule.principal * cap_percent / Decimal("100"))
            if new_cap < committed:
                raise ValidationError(
                    f"Cap {new_cap} is below the {committed} already paid out"
                )

            old_cap = schedule.cap_percent
            schedule.cap_percent = cap_percent
            reached = schedule.amount_in_flight == ZERO and schedule.amount_released >= new_cap
            if reached:
                self._complete(schedule, now)
            try:
                schedule = self.storage.compare_and_set(SCHEDULES, schedule)
            except ConcurrencyConflict:
                continue

            logger.info(
                f"Benefit cap updated schedule={schedule_id} "
                f"cap={old_cap}% -> {cap_percent}%"
            )
            if reached:
                self._notify_completed(schedule)
            return schedule

        raise TransientLedgerError(f"Could not update schedule {schedule_id}")

    def _transition(
        self,
        schedule_id: UUID,
        allowed_from: set[ScheduleStatus],
        to: ScheduleStatus,
    ) -> BenefitSchedule:
        for _ in range(self.settings.cas_max_retries):
            schedule = self.get_schedule(schedule_id)
            if schedule.status not in allowed_from:
                raise InvalidStateTransitionError(
                    f"Cannot move schedule {schedule_id} from "
                    f"{schedule.status.value} to {to.value}"
                )
            previous = schedule.status
            schedule.status = to
            try:
                schedule = self.storage.compare_and_set(SCHEDULES, schedule)
            except ConcurrencyConflict:
                continue
            logger.info(
                f"Benefit schedule {schedule_id} {previous.value} -> {to.value}"
            )
            return schedule

        raise TransientLedgerError(f"Could not update schedule {schedule_id}")

    def _mark_released(
        self,
        schedule_id: UUID,
        day_index: int,
        entry: LedgerEntry,
        as_of: datetime,
    ) -> DayRelease:
        for _ in range(self.settings.cas_max_retries):
            schedule = self.get_schedule(schedule_id)
            state = schedule.day_state(day_index)
            state.status = DayStatus.RELEASED
            state.released_at = as_of
            state.ledger_entry_id = entry.id
            state.error = None
            schedule.status_by_day[day_index] = state
            schedule.days_released += 1
            schedule.amount_released += state.amount

            completed = False
            if schedule.status in (ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED) and (
                schedule.amount_released >= schedule.cap_amount
                or schedule.days_released >= schedule.payout_days
            ):
                self._complete(schedule, as_of)
                completed = True

            try:
                schedule = self.storage.compare_and_set(SCHEDULES, schedule)
            except ConcurrencyConflict:
                continue

            logger.info(
                f"Benefit released schedule={schedule_id} day={day_index} "
                f"amount={state.amount} total={schedule.amount_released} "
                f"days={schedule.days_released}/{schedule.payout_days}"
            )
            if completed:
                self._notify_completed(schedule)
            return self._result(schedule, day_index, state)

        logger.error(
            f"Benefit day credited but not marked released schedule={schedule_id} "
            f"day={day_index} ledger_entry={entry.id}"
        )
        raise TransientLedgerError(
            f"Day {day_index} of schedule {schedule_id} was credited "
            f"(entry {entry.id}) but could not be marked released"
        )

    def _revert_claim(self, schedule_id: UUID, day_index: int, error: str) -> None:
        for _ in range(self.settings.cas_max_retries):
            schedule = self.get_schedule(schedule_id)
            if schedule.day_state(day_index).status != DayStatus.PROCESSING:
                return
            schedule.status_by_day[day_index] = DayState(
                status=DayStatus.PENDING, error=error
            )
            try:
                self.storage.compare_and_set(SCHEDULES, schedule)
                return
            except ConcurrencyConflict:
                continue
        logger.error(
            f"Could not return day {day_index} of schedule {schedule_id} to pending"
        )

    def _complete(self, schedule: BenefitSchedule, now: datetime) -> None:
        schedule.status = ScheduleStatus.COMPLETED
        schedule.completed_at = now

    def _notify_completed(self, schedule: BenefitSchedule) -> None:
        logger.info(
            f"Benefit schedule completed schedule={schedule.id} "
            f"released={schedule.amount_released} days={schedule.days_released}"
        )
        if self.on_completed is not None:
            self.on_completed(schedule)

    def _result(
        self,
        schedule: BenefitSchedule,
        day_index: int,
        state: DayState,
        already_processed: bool = False,
        in_progress: bool = False,
    ) -> DayRelease:
        return DayRelease(
            schedule_id=schedule.id,
            day_index=day_index,
            status=state.status,
            amount=state.amount,
            already_processed=already_processed,
            in_progress=in_progress,
            schedule_status=schedule.status,
            ledger_entry_id=state.ledger_entry_id,
        )
