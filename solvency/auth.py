"""Role-based authorization: one controller, one ``require_role`` choke point."""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import StrEnum

from solvency.errors import AuthorizationError

logger = logging.getLogger(__name__)


class Role(StrEnum):
    ADMIN = "admin"  # 設定変更
    PUBLISHER = "publisher"  # attestation 提出
    GATEWAY = "gateway"  # capacity 記録
    GUARDIAN = "guardian"  # 緊急 snapshot override
    STEWARD = "steward"  # 手数料免除


class AccessController:
    def __init__(self) -> None:
        self._members: dict[Role, set[str]] = defaultdict(set)

    def grant(self, role: Role, account: str) -> None:
        if account not in self._members[role]:
            self._members[role].add(account)
            logger.info("Granted %s to %s", role.value, account)

    def revoke(self, role: Role, account: str) -> None:
        if account in self._members[role]:
            self._members[role].discard(account)
            logger.info("Revoked %s from %s", role.value, account)

    def has_role(self, account: str, role: Role) -> bool:
        return account in self._members[role]

    def require_role(self, caller: str, role: Role) -> None:
        if not self.has_role(caller, role):
            logger.warning("Authorization denied: %s lacks %s", caller, role.value)
            raise AuthorizationError(caller, role.value)

    def members(self, role: Role) -> set[str]:
        return set(self._members[role])
