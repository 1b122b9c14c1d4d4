"""
Analytics Calculator -- derives batch metrics from step observations.

Responsibility:
    Given a batch, the template of the step just completed and the operator's
    free-form payload, update the batch's weight, recovery and timing fields.
    Step semantics are inferred from the template NAME (flows are
    user-authored, so the set of station names is open-ended); the same
    ``mass_check`` type behaves differently depending on the step it is
    attached to.

Architecture position:
    Kernel > Domain -- pure with respect to its inputs.  Reads time only
    through the injected Clock and templates only through a TemplateCatalog.
    All writes land on the batch aggregate passed in.

Rule table:
    ANALYTICS_RULES is evaluated top to bottom on every step completion.
    Order is significant and part of the contract:

        first_arrival      name ~ melting | receiving
        received_weight    mass_check, name ~ receiving | initial
        expected_output    name ~ expected | pre-cast | target
        first_export       name ~ export | first pour | casting
        recovery_pour      name ~ recovery
        aggregate_recovery always
        loss_gain          always
        tolerance_check    mass_check with expected_mass and tolerance

Invariants enforced:
    - fine_grams_received is derived once; later changes to its operands do
      not recompute it.
    - The assumed expected output (fine_grams_received x assumed recovery
      ratio) fires only while expected_output_g is unset.  A captured value
      replaces an assumed one, never the reverse.
    - first_export and recovery_pour are independent: a step whose template
      matches both records the export weight as pour #1 and its pour_weight
      as the next pour.
    - Division by zero leaves the derived percentage unset.

Failure modes:
    - TemplateNotFoundError is logged and derivation is skipped; the step
      itself still completes.
    - Payload values that do not parse as numbers are logged and skipped.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, tzinfo
from decimal import Decimal
from typing import Any, Protocol

from refinery_kernel.db.types import to_decimal
from refinery_kernel.domain.business_hours import DEFAULT_WEEKEND_DAYS, business_hours
from refinery_kernel.domain.clock import Clock
from refinery_kernel.domain.templates import (
    TemplateCatalog,
    TemplateInfo,
    ToleranceUnit,
)
from refinery_kernel.domain.values import ExpectedOutputSource, FlagType
from refinery_kernel.exceptions import TemplateNotFoundError
from refinery_kernel.logging_config import get_logger

logger = get_logger("domain.analytics")

DEFAULT_ASSUMED_RECOVERY_RATIO = Decimal("0.995")

HUNDRED = Decimal("100")

# Payload key groups, first usable key wins
MASS_KEYS = ("measured_mass", "mass", "weight")
FINE_PERCENT_KEYS = ("fine_content_percent", "fine_percent", "purity")
OUTPUT_WEIGHT_KEYS = ("output_weight", "pour_weight", "weight")
POUR_WEIGHT_KEYS = ("pour_weight",)
ARRIVAL_TEXT_KEYS = ("supplier", "drill_number", "destination")


class AnalyticsTarget(Protocol):
    """The slice of the batch aggregate the calculator reads and writes."""

    batch_number: str
    melting_received_at: datetime | None
    supplier: str | None
    drill_number: str | None
    destination: str | None
    received_weight_g: Decimal | None
    fine_content_percent: Decimal | None
    fine_grams_received: Decimal | None
    expected_output_g: Decimal | None
    expected_output_source: str | None
    first_export_at: datetime | None
    output_weight_g: Decimal | None
    first_time_recovery_g: Decimal | None
    ftt_hours: int | None
    total_recovery_g: Decimal | None
    overall_recovery_percent: Decimal | None
    actual_output_g: Decimal | None
    loss_gain_g: Decimal | None
    loss_gain_percent: Decimal | None

    def pour_weights(self) -> list[Decimal]: ...

    def add_recovery_pour(self, weight_g: Decimal, timestamp: datetime) -> int: ...

    def raise_flag(
        self,
        flag_type: FlagType,
        reason: str,
        *,
        flagged_at: datetime,
        flagged_by: str | None,
        derived: bool = False,
        notes: str | None = None,
    ) -> Any: ...


@dataclass
class StepObservation:
    """Everything a rule effect may read while handling one step."""

    batch: AnalyticsTarget
    template: TemplateInfo
    payload: Mapping[str, Any]
    now: datetime
    actor_id: str | None
    calculator: "AnalyticsCalculator"

    def number(self, keys: Iterable[str]) -> Decimal | None:
        return first_number(self.payload, keys, batch_number=self.batch.batch_number)


@dataclass(frozen=True)
class AnalyticsRule:
    """One entry of the ordered rule table."""

    name: str
    applies: Callable[[TemplateInfo], bool]
    effect: Callable[[StepObservation], bool]


def _name_contains(*keywords: str) -> Callable[[TemplateInfo], bool]:
    def predicate(template: TemplateInfo) -> bool:
        name = template.normalized_name
        return any(keyword in name for keyword in keywords)

    return predicate


def _always(template: TemplateInfo) -> bool:
    return True


def first_number(
    payload: Mapping[str, Any] | None,
    keys: Iterable[str],
    batch_number: str | None = None,
) -> Decimal | None:
    """
    Return the first value under ``keys`` that parses as a number.

    Missing, null and blank values are passed over silently; values that are
    present but not numeric are logged and passed over.
    """
    if not payload:
        return None
    for key in keys:
        raw = payload.get(key)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            continue
        value = to_decimal(raw)
        if value is None:
            logger.warning(
                "analytics_value_unparseable",
                extra={"batch_number": batch_number, "key": key, "value": repr(raw)},
            )
            continue
        return value
    return None


def _first_text(payload: Mapping[str, Any], key: str) -> str | None:
    raw = payload.get(key)
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


# ---------------------------------------------------------------------------
# Rule effects
# ---------------------------------------------------------------------------


def _first_arrival(obs: StepObservation) -> bool:
    batch = obs.batch
    if batch.melting_received_at is not None:
        return False
    batch.melting_received_at = obs.now
    for key in ARRIVAL_TEXT_KEYS:
        text = _first_text(obs.payload, key)
        if text is not None:
            setattr(batch, key, text)
    return True


def _received_weight(obs: StepObservation) -> bool:
    batch = obs.batch
    changed = False
    if batch.received_weight_g is None:
        mass = obs.number(MASS_KEYS)
        if mass is not None:
            batch.received_weight_g = mass
            changed = True
    if batch.fine_content_percent is None:
        percent = obs.number(FINE_PERCENT_KEYS)
        if percent is not None:
            batch.fine_content_percent = percent
            changed = True
    if (
        batch.fine_grams_received is None
        and batch.received_weight_g is not None
        and batch.fine_content_percent is not None
    ):
        batch.fine_grams_received = (
            batch.received_weight_g * batch.fine_content_percent / HUNDRED
        )
        changed = True
    return changed


def _expected_output(obs: StepObservation) -> bool:
    batch = obs.batch
    if (
        batch.expected_output_g is not None
        and batch.expected_output_source != ExpectedOutputSource.ASSUMED.value
    ):
        return False
    weight = obs.number(OUTPUT_WEIGHT_KEYS)
    if weight is None:
        return False
    batch.expected_output_g = weight
    batch.expected_output_source = ExpectedOutputSource.CAPTURED.value
    return True


def _first_export(obs: StepObservation) -> bool:
    batch = obs.batch
    if batch.first_export_at is not None:
        return False
    weight = obs.number(OUTPUT_WEIGHT_KEYS)
    if weight is None:
        return False
    batch.first_export_at = obs.now
    batch.output_weight_g = weight
    batch.first_time_recovery_g = weight
    batch.add_recovery_pour(weight, obs.now)
    if batch.melting_received_at is not None:
        batch.ftt_hours = obs.calculator.business_hours(
            batch.melting_received_at, batch.first_export_at
        )
    return True


def _recovery_pour(obs: StepObservation) -> bool:
    weight = obs.number(POUR_WEIGHT_KEYS)
    if weight is None:
        return False
    obs.batch.add_recovery_pour(weight, obs.now)
    return True


def _aggregate_recovery_effect(obs: StepObservation) -> bool:
    return aggregate_recovery(obs.batch)


def _loss_gain_effect(obs: StepObservation) -> bool:
    return obs.calculator.loss_gain(obs.batch)


def _tolerance_check(obs: StepObservation) -> bool:
    template = obs.template
    if template.expected_mass is None or template.tolerance is None:
        return False
    measured = obs.number(MASS_KEYS)
    if measured is None:
        return False

    allowed = template.tolerance
    if template.tolerance_unit == ToleranceUnit.PERCENT:
        allowed = abs(template.expected_mass) * template.tolerance / HUNDRED
    deviation = measured - template.expected_mass
    if abs(deviation) <= allowed:
        return False

    unit = template.tolerance_unit.value
    obs.batch.raise_flag(
        FlagType.OUT_OF_TOLERANCE,
        (
            f"{template.name}: measured {measured} g, expected "
            f"{template.expected_mass} g +/- {template.tolerance} {unit}"
        ),
        flagged_at=obs.now,
        flagged_by=obs.actor_id,
        derived=True,
    )
    return True


def _is_mass_check_named(*keywords: str) -> Callable[[TemplateInfo], bool]:
    by_name = _name_contains(*keywords)

    def predicate(template: TemplateInfo) -> bool:
        return template.is_mass_check and by_name(template)

    return predicate


def _has_tolerance(template: TemplateInfo) -> bool:
    return template.is_mass_check and template.tolerance is not None


ANALYTICS_RULES: tuple[AnalyticsRule, ...] = (
    AnalyticsRule(
        "first_arrival",
        _name_contains("melting", "receiving"),
        _first_arrival,
    ),
    AnalyticsRule(
        "received_weight",
        _is_mass_check_named("receiving", "initial"),
        _received_weight,
    ),
    AnalyticsRule(
        "expected_output",
        _name_contains("expected", "pre-cast", "target"),
        _expected_output,
    ),
    AnalyticsRule(
        "first_export",
        _name_contains("export", "first pour", "casting"),
        _first_export,
    ),
    AnalyticsRule(
        "recovery_pour",
        _name_contains("recovery"),
        _recovery_pour,
    ),
    AnalyticsRule("aggregate_recovery", _always, _aggregate_recovery_effect),
    AnalyticsRule("loss_gain", _always, _loss_gain_effect),
    AnalyticsRule("tolerance_check", _has_tolerance, _tolerance_check),
)


# ---------------------------------------------------------------------------
# Derivations shared by the rule table and finalize_analytics
# ---------------------------------------------------------------------------


def aggregate_recovery(batch: AnalyticsTarget) -> bool:
    """Total the pour ledger and, when possible, the overall recovery %."""
    weights = batch.pour_weights()
    if not weights:
        return False
    batch.total_recovery_g = sum(weights, Decimal("0"))
    fine = batch.fine_grams_received
    if fine is not None and fine > 0:
        batch.overall_recovery_percent = batch.total_recovery_g / fine * HUNDRED
    return True


def ftt_recovery_percent(batch: AnalyticsTarget) -> Decimal | None:
    """
    First-time-through recovery: first export weight over fine grams received.

    Read-time projection; never written back.  None when either operand is
    missing or zero.
    """
    first = batch.first_time_recovery_g
    fine = batch.fine_grams_received
    if not first or not fine:
        return None
    return first / fine * HUNDRED


class AnalyticsCalculator:
    """
    Applies the rule table to a batch on each step completion.

    Contract:
        ``apply`` never raises for a missing template or a malformed payload;
        it returns the names of the rules that changed the batch.
    """

    def __init__(
        self,
        catalog: TemplateCatalog,
        clock: Clock,
        *,
        assumed_recovery_ratio: Decimal = DEFAULT_ASSUMED_RECOVERY_RATIO,
        weekend_days: Iterable[int] = DEFAULT_WEEKEND_DAYS,
        business_timezone: tzinfo | None = None,
        rules: tuple[AnalyticsRule, ...] = ANALYTICS_RULES,
    ):
        self._catalog = catalog
        self._clock = clock
        self._assumed_ratio = Decimal(assumed_recovery_ratio)
        self._weekend_days = frozenset(weekend_days)
        self._tz = business_timezone
        self._rules = rules

    @property
    def rules(self) -> tuple[AnalyticsRule, ...]:
        return self._rules

    @property
    def assumed_recovery_ratio(self) -> Decimal:
        return self._assumed_ratio

    def business_hours(self, start: datetime, end: datetime) -> int:
        return business_hours(
            start, end, weekend_days=self._weekend_days, tz=self._tz
        )

    def apply(
        self,
        batch: AnalyticsTarget,
        template_id: str | None,
        payload: Mapping[str, Any] | None,
        actor_id: str | None = None,
    ) -> tuple[str, ...]:
        """
        Update ``batch`` from one step observation.

        Returns:
            Names of the rules whose effect changed the batch, in order.
        """
        if not template_id:
            logger.debug(
                "analytics_skipped_no_template",
                extra={"batch_number": batch.batch_number},
            )
            return ()
        try:
            template = self._catalog.get_template(template_id)
        except TemplateNotFoundError:
            logger.warning(
                "analytics_template_not_found",
                extra={
                    "batch_number": batch.batch_number,
                    "template_id": template_id,
                },
            )
            return ()

        obs = StepObservation(
            batch=batch,
            template=template,
            payload=payload or {},
            now=self._clock.now_utc(),
            actor_id=actor_id,
            calculator=self,
        )

        applied: list[str] = []
        for rule in self._rules:
            if not rule.applies(template):
                continue
            if rule.effect(obs):
                applied.append(rule.name)
                logger.debug(
                    "analytics_rule_applied",
                    extra={
                        "batch_number": batch.batch_number,
                        "template_id": template_id,
                        "rule": rule.name,
                    },
                )
        return tuple(applied)

    def loss_gain(self, batch: AnalyticsTarget) -> bool:
        """
        Derive actual output and loss/gain against the expected output.

        Synthesizes an assumed expected output from fine grams received when
        none was ever captured.
        """
        if batch.total_recovery_g is None:
            return False
        if batch.expected_output_g is None:
            if batch.fine_grams_received is None:
                return False
            batch.expected_output_g = batch.fine_grams_received * self._assumed_ratio
            batch.expected_output_source = ExpectedOutputSource.ASSUMED.value
            logger.info(
                "analytics_expected_output_assumed",
                extra={
                    "batch_number": batch.batch_number,
                    "ratio": self._assumed_ratio,
                },
            )

        expected = batch.expected_output_g
        batch.actual_output_g = batch.total_recovery_g
        batch.loss_gain_g = batch.actual_output_g - expected
        if expected != 0:
            batch.loss_gain_percent = batch.loss_gain_g / expected * HUNDRED
        else:
            batch.loss_gain_percent = None
        return True

    def finalize_analytics(self, batch: AnalyticsTarget) -> None:
        """Re-derive recovery totals and loss/gain from the pour ledger."""
        aggregate_recovery(batch)
        self.loss_gain(batch)
