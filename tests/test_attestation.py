"""Tests for the collateral-ratio attestation store."""

from __future__ import annotations

import pytest

from solvency.errors import AuthorizationError, StaleDataError, ValidationError
from solvency.fixed_point import CR_INFINITY, SCALE
from solvency.telemetry import TelemetryKind
from tests.helpers import PUBLISHER, publish, seed


class TestCollateralRatio:
    def test_reserve_plus_valuation(self, harness):
        seed(harness, 1_000_000, 100_000)
        cr = publish(harness, 950_000)
        assert cr == 1_050_000_000_000_000_000
        assert harness.attestation.collateral_ratio() == cr

    def test_haircut_applies_to_valuation_only(self, harness):
        seed(harness, 1_000_000, 100_000)
        cr = publish(harness, 1_000_000, haircut=900_000_000_000_000_000)
        # 100k + 0.9 × 1M = 1M
        assert cr == SCALE

    def test_zero_supply_is_infinite(self, harness):
        assert harness.attestation.implied_collateral_ratio(0, SCALE) == CR_INFINITY
        assert publish(harness, 0) == CR_INFINITY

    def test_reserve_only_before_first_publish(self, harness):
        seed(harness, 1_000_000, 100_000)
        assert not harness.attestation.has_attestation
        assert harness.attestation.collateral_ratio() == SCALE // 10

    def test_treasury_is_not_backing(self, harness):
        seed(harness, 1_000_000, 100_000)
        harness.reserve.treasury = 500_000 * 10**6
        assert harness.attestation.scaled_reserve() == 100_000 * SCALE


class TestPublishValidation:
    @pytest.mark.parametrize("haircut", [0, SCALE + 1, -1])
    def test_haircut_range(self, harness, haircut):
        seed(harness, 1_000_000, 100_000)
        with pytest.raises(ValidationError) as exc_info:
            publish(harness, 950_000, haircut=haircut)
        assert exc_info.value.field == "haircut"

    def test_full_haircut_allowed(self, harness):
        seed(harness, 1_000_000, 100_000)
        publish(harness, 950_000, haircut=SCALE)

    def test_negative_valuation(self, harness):
        seed(harness, 1_000_000, 100_000)
        with pytest.raises(ValidationError):
            harness.attestation.publish(PUBLISHER, -1, SCALE, harness.clock.now())

    def test_future_measurement_rejected(self, harness):
        seed(harness, 1_000_000, 100_000)
        with pytest.raises(ValidationError) as exc_info:
            publish(harness, 950_000, age=-1)
        assert exc_info.value.field == "measurement_time"

    def test_measurement_time_must_increase(self, harness):
        seed(harness, 1_000_000, 100_000)
        publish(harness, 950_000, age=60)
        first = harness.attestation.attestation

        with pytest.raises(ValidationError):
            publish(harness, 960_000, age=60)  # same measurement_time
        with pytest.raises(ValidationError):
            publish(harness, 960_000, age=120)  # older

        assert harness.attestation.attestation == first
        assert len(harness.telemetry.of_kind(TelemetryKind.ATTESTATION_PUBLISHED)) == 1

    def test_requires_publisher_role(self, harness):
        seed(harness, 1_000_000, 100_000)
        with pytest.raises(AuthorizationError) as exc_info:
            harness.attestation.publish("mallory", 950_000 * SCALE, SCALE, harness.clock.now())
        assert exc_info.value.role == "publisher"
        assert not harness.attestation.has_attestation


class TestStalenessWindow:
    def test_stressed_window_when_implied_cr_below_one(self, harness):
        seed(harness, 1_000_000, 100_000)
        with pytest.raises(StaleDataError) as exc_info:
            publish(harness, 880_000, age=4_000)  # CR 0.98
        assert exc_info.value.bound == 3_600
        assert exc_info.value.age == 4_000

    def test_healthy_window_when_implied_cr_at_least_one(self, harness):
        seed(harness, 1_000_000, 100_000)
        publish(harness, 950_000, age=4_000)
        assert harness.attestation.staleness() == (4_000, 172_800)

    def test_window_chosen_from_new_values(self, harness):
        # 直前の CR が 1.0 以上でも、新しい値が 1.0 未満なら stressed
        seed(harness, 1_000_000, 100_000)
        publish(harness, 950_000, age=10_000)
        harness.clock.advance(10)
        with pytest.raises(StaleDataError):
            publish(harness, 800_000, age=5_000)

    def test_require_fresh(self, harness):
        seed(harness, 1_000_000, 100_000)
        with pytest.raises(StaleDataError) as exc_info:
            harness.attestation.require_fresh()
        assert exc_info.value.age == -1
        assert harness.attestation.is_stale()

        publish(harness, 880_000)
        harness.attestation.require_fresh()
        assert not harness.attestation.is_stale()

        harness.clock.advance(3_600)  # age 3660 > 3600
        with pytest.raises(StaleDataError):
            harness.attestation.require_fresh()
        assert harness.attestation.is_stale()


class TestPublishTelemetry:
    def test_event_payload(self, harness):
        seed(harness, 1_000_000, 100_000)
        cr = publish(harness, 950_000, age=30)
        event = harness.telemetry.last(TelemetryKind.ATTESTATION_PUBLISHED)
        assert event is not None
        assert event.payload["implied_cr"] == cr
        assert event.payload["valuation"] == 950_000 * SCALE
        assert event.payload["measurement_time"] == harness.clock.now() - 30
        assert event.payload["submission_time"] == harness.clock.now()

    def test_rejected_publish_emits_nothing(self, harness):
        seed(harness, 1_000_000, 100_000)
        with pytest.raises(StaleDataError):
            publish(harness, 880_000, age=4_000)
        assert harness.telemetry.records == []
