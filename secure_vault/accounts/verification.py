"""
Step-up verification gates for revealing stored secrets.

Each secret item gets its own :class:`RevealGate`. Gates only move between
``hidden``, ``awaiting_code`` and ``revealed``; a reveal always goes back
through ``awaiting_code`` even if the user already proved the code once for
another item or earlier for the same item.
"""

from __future__ import annotations

import hmac
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from django.conf import settings

from accounts.exceptions import GateStateError
from accounts.models import UserProfile
from core.logging_utils import get_accounts_logger
from core.rate_limit import (
    RateLimitScenario,
    increment_rate_limit,
    is_rate_limited,
    reset_rate_limit,
)
from vault.codec import key_material_for, unseal
from vault.exceptions import DecryptionError

logger = get_accounts_logger()

INVALID_CODE_MESSAGE = "Invalid verification code"
LOCKED_OUT_MESSAGE = "Too many invalid codes. Try again in {seconds} seconds."

SESSION_GATES_KEY = 'vault_reveal_gates'
SESSION_CODE_KEY = 'vault_reveal_code'


class GateState:
    HIDDEN = 'hidden'
    AWAITING_CODE = 'awaiting_code'
    REVEALED = 'revealed'

    CHOICES = (HIDDEN, AWAITING_CODE, REVEALED)


def codes_match(submitted, expected) -> bool:
    """Exact, case-sensitive comparison. Whitespace is significant."""
    if not isinstance(submitted, str) or not isinstance(expected, str) or not expected:
        return False
    return hmac.compare_digest(submitted.encode('utf-8'), expected.encode('utf-8'))


@dataclass
class RevealGate:
    item_id: str
    state: str = GateState.HIDDEN
    error: Optional[str] = None

    @property
    def is_revealed(self) -> bool:
        return self.state == GateState.REVEALED

    def request_reveal(self) -> None:
        if self.state == GateState.HIDDEN:
            self.state = GateState.AWAITING_CODE
            self.error = None

    def submit_code(self, code, expected) -> bool:
        if self.state != GateState.AWAITING_CODE:
            raise GateStateError(f"Cannot submit a code while the gate is {self.state}")

        if codes_match(code, expected):
            self.state = GateState.REVEALED
            self.error = None
            return True

        self.error = INVALID_CODE_MESSAGE
        return False

    def cancel(self) -> None:
        if self.state == GateState.AWAITING_CODE:
            self.state = GateState.HIDDEN
        self.error = None

    def hide(self) -> None:
        self.state = GateState.HIDDEN
        self.error = None

    def toggle(self) -> None:
        if self.state == GateState.REVEALED:
            self.hide()
        else:
            self.request_reveal()

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data) -> 'RevealGate':
        state = data.get('state', GateState.HIDDEN)
        if state not in GateState.CHOICES:
            state = GateState.HIDDEN
        return cls(item_id=str(data['item_id']), state=state, error=data.get('error'))


class VerificationSession:
    """
    Per-login holder of the reveal gates and the cached one-time code.

    Gates live in the Django session, so they disappear on logout. The code is
    cached in its sealed form and only opened when a submission is checked.
    """

    def __init__(self, session, user):
        self.session = session
        self.user = user

    # Code cache

    def prime(self) -> None:
        """Cache the user's sealed code. Called right after login."""
        sealed = (
            UserProfile.objects.filter(user=self.user)
            .values_list('one_time_code', flat=True)
            .first()
        )
        if sealed:
            self.session[SESSION_CODE_KEY] = sealed

    def expected_code(self) -> Optional[str]:
        if not self.session.get(SESSION_CODE_KEY):
            self.prime()
        sealed = self.session.get(SESSION_CODE_KEY)
        if not sealed:
            return None
        try:
            return unseal(sealed, key_material_for(self.user))
        except DecryptionError:
            logger.encryption_event("cached one-time code could not be unsealed", self.user, success=False)
            self.session.pop(SESSION_CODE_KEY, None)
            return None

    # Gates

    def _gates(self) -> Dict[str, dict]:
        return self.session.get(SESSION_GATES_KEY, {})

    def gate(self, item_id) -> RevealGate:
        data = self._gates().get(str(item_id))
        if data is None:
            return RevealGate(item_id=str(item_id))
        return RevealGate.from_dict(data)

    def _store(self, gate: RevealGate) -> RevealGate:
        gates = dict(self._gates())
        if gate.state == GateState.HIDDEN and not gate.error:
            gates.pop(gate.item_id, None)
        else:
            gates[gate.item_id] = gate.to_dict()
        self.session[SESSION_GATES_KEY] = gates
        return gate

    def revealed_ids(self) -> List[str]:
        return [item_id for item_id, data in self._gates().items()
                if data.get('state') == GateState.REVEALED]

    def is_revealed(self, item_id) -> bool:
        return self.gate(item_id).is_revealed

    def request_reveal(self, item_id) -> RevealGate:
        gate = self.gate(item_id)
        gate.request_reveal()
        return self._store(gate)

    def submit_code(self, item_id, code) -> RevealGate:
        gate = self.gate(item_id)
        if gate.state != GateState.AWAITING_CODE:
            raise GateStateError(f"Cannot submit a code while the gate is {gate.state}")

        max_attempts = getattr(settings, 'VAULT_REVEAL_MAX_ATTEMPTS', None)
        identifier = str(self.user.pk)

        if max_attempts:
            status = is_rate_limited(RateLimitScenario.REVEAL_CODE_USER, identifier)
            if status.blocked:
                gate.error = LOCKED_OUT_MESSAGE.format(seconds=status.retry_after)
                logger.security_event("Reveal code submission while locked out", self.user,
                                      extra_data={"item_id": gate.item_id})
                return self._store(gate)

        succeeded = gate.submit_code(code, self.expected_code())
        logger.verification_event("reveal_code_submitted", self.user, success=succeeded,
                                  extra_data={"item_id": gate.item_id})

        if max_attempts:
            if succeeded:
                reset_rate_limit(RateLimitScenario.REVEAL_CODE_USER, identifier)
            else:
                lockout = int(getattr(settings, 'VAULT_REVEAL_LOCKOUT_SECONDS', 300))
                result = increment_rate_limit(
                    RateLimitScenario.REVEAL_CODE_USER,
                    identifier,
                    limit=int(max_attempts),
                    window=lockout,
                    block=lockout,
                )
                if result.blocked:
                    gate.error = LOCKED_OUT_MESSAGE.format(seconds=result.retry_after)

        return self._store(gate)

    def cancel(self, item_id) -> RevealGate:
        gate = self.gate(item_id)
        gate.cancel()
        return self._store(gate)

    def hide(self, item_id) -> RevealGate:
        gate = self.gate(item_id)
        gate.hide()
        return self._store(gate)

    def toggle(self, item_id) -> RevealGate:
        gate = self.gate(item_id)
        gate.toggle()
        return self._store(gate)

    def forget(self, item_id) -> None:
        """Drop the gate of an item that no longer exists."""
        gates = dict(self._gates())
        if gates.pop(str(item_id), None) is not None:
            self.session[SESSION_GATES_KEY] = gates

    def clear(self) -> None:
        self.session.pop(SESSION_GATES_KEY, None)
        self.session.pop(SESSION_CODE_KEY, None)
