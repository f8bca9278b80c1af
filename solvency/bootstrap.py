"""Wire state, authorization, store, engine and gateway together.

Peers are injected after construction through each component's ``bind()``,
so no component imports another's concrete collaborators.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from solvency.auth import AccessController, Role
from solvency.config import Settings, settings
from solvency.connectors.base import AccessCheck, Clock, Ledger, PriceFeed, Reserve
from solvency.connectors.memory import SystemClock
from solvency.gateway.pricing_gateway import PricingGateway
from solvency.risk.attestation import AttestationStore
from solvency.risk.capacity_engine import CapacityPolicyEngine
from solvency.risk.policy import PolicyConfig
from solvency.risk.state import SystemState
from solvency.telemetry import TelemetryLog

logger = logging.getLogger(__name__)


@dataclass
class SolvencySystem:
    state: SystemState
    access: AccessController
    attestation: AttestationStore
    engine: CapacityPolicyEngine
    gateway: PricingGateway
    telemetry: TelemetryLog


def build_system(
    *,
    ledger: Ledger,
    reserve: Reserve,
    price_feed: PriceFeed,
    access_check: AccessCheck,
    clock: Clock | None = None,
    policy: PolicyConfig | None = None,
    db_path: Path | str | None = None,
    app_settings: Settings | None = None,
) -> SolvencySystem:
    """Build a ready-to-use control plane.

    Policy priority: explicit ``policy`` > config persisted in ``db_path`` >
    ``Settings``. Persisted state (band, counters, attestation) is restored
    when ``db_path`` already holds it.
    """
    from solvency.store.db import load_policy_config, load_system_state

    s = app_settings or settings
    db_path = db_path or s.db_path or None
    clock = clock or SystemClock()

    stored_policy = load_policy_config(db_path=db_path) if db_path else None
    resolved = policy or stored_policy or PolicyConfig.from_settings(s)
    resolved.validate()

    telemetry = TelemetryLog(db_path)
    state = SystemState(policy=resolved, telemetry=telemetry, db_path=db_path)
    if db_path:
        if load_system_state(state, db_path=db_path):
            logger.info("Restored solvency state from %s (band=%s)", db_path, state.band.name)
        if policy is None and stored_policy is not None:
            state.mark_policy_persisted()

    access = AccessController()
    access.grant(Role.GATEWAY, resolved.gateway_account)

    attestation = AttestationStore(state, access, clock)
    engine = CapacityPolicyEngine(state, access, clock, attestation)
    gateway = PricingGateway(state, access, clock, engine)

    attestation.bind(ledger, reserve)
    engine.bind(ledger, price_feed)
    gateway.bind(ledger, reserve, access_check)

    return SolvencySystem(
        state=state,
        access=access,
        attestation=attestation,
        engine=engine,
        gateway=gateway,
        telemetry=telemetry,
    )
