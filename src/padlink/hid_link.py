"""
Link state for the BLE HID peripheral.

Tracks the connected peer, its bond state and whether it subscribed to input
report notifications. Bond and subscription changes arrive as independent
events; the link is only usable once both hold. All mutation happens behind
a lock because sends from the input thread race with BlueZ callbacks.
"""

import logging
import threading
from enum import Enum
from typing import Callable, List, Optional

from .transport import ConnectionState

logger = logging.getLogger(__name__)


class BondState(Enum):
    NONE = "none"
    BONDING = "bonding"
    BONDED = "bonded"


class LinkState(Enum):
    IDLE = "idle"
    ADVERTISING = "advertising"
    CONNECTED_UNBONDED = "connected-unbonded"
    BONDED = "bonded"
    READY = "ready"
    ERROR = "error"


_SHARED = {
    LinkState.IDLE: ConnectionState.DISCONNECTED,
    LinkState.ADVERTISING: ConnectionState.DISCOVERING,
    LinkState.CONNECTED_UNBONDED: ConnectionState.CONNECTING,
    LinkState.BONDED: ConnectionState.CONNECTING,
    LinkState.READY: ConnectionState.CONNECTED,
    LinkState.ERROR: ConnectionState.ERROR,
}


def shared_state(state: LinkState) -> ConnectionState:
    return _SHARED[state]


class HidLink:
    """State machine: Idle -> Advertising -> Connected/Unbonded -> Bonded -> Ready."""

    def __init__(self):
        self._lock = threading.RLock()
        self._state = LinkState.IDLE
        self._advertising = False
        self._peer: Optional[str] = None
        self._bond = BondState.NONE
        self._notifying = False
        self._listeners: List[Callable[[LinkState], None]] = []

    def add_listener(self, listener: Callable[[LinkState], None]) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> LinkState:
        with self._lock:
            return self._state

    @property
    def peer(self) -> Optional[str]:
        with self._lock:
            return self._peer

    @property
    def bond_state(self) -> BondState:
        with self._lock:
            return self._bond

    @property
    def notifying(self) -> bool:
        with self._lock:
            return self._notifying

    def can_send(self) -> bool:
        with self._lock:
            return self._peer is not None and self._bond is BondState.BONDED and self._notifying

    def advertising_started(self) -> None:
        with self._lock:
            self._advertising = True
            self._recompute()

    def advertising_stopped(self) -> None:
        with self._lock:
            self._advertising = False
            self._recompute()

    def advertising_failed(self, reason: str) -> None:
        logger.error(f"Advertising failed: {reason}")
        with self._lock:
            self._advertising = False
            self._transition(LinkState.ERROR)

    def peer_connected(self, address: str) -> None:
        with self._lock:
            if self._peer == address:
                return
            if self._peer is not None:
                logger.info(f"Ignoring second peer {address}, already serving {self._peer}")
                return
            # A subscription can arrive before the connection event; keep it
            self._peer = address
            self._recompute()

    def peer_disconnected(self, address: Optional[str] = None) -> None:
        with self._lock:
            if self._peer is None or (address is not None and address != self._peer):
                return
            self._peer = None
            self._bond = BondState.NONE
            self._notifying = False
            self._recompute()

    def bond_changed(self, address: str, bond: BondState) -> None:
        with self._lock:
            if self._peer is None:
                # Pairing can complete before the connection event is seen
                self._peer = address
            elif address != self._peer:
                return
            self._bond = bond
            self._recompute()

    def notifications_changed(self, enabled: bool) -> None:
        with self._lock:
            if self._peer is None and enabled:
                logger.debug("Subscription without a known peer; waiting for connection")
            self._notifying = enabled
            self._recompute()

    def reset(self) -> None:
        with self._lock:
            self._advertising = False
            self._peer = None
            self._bond = BondState.NONE
            self._notifying = False
            self._transition(LinkState.IDLE)

    def _recompute(self) -> None:
        if self._peer is None:
            target = LinkState.ADVERTISING if self._advertising else LinkState.IDLE
        elif self._bond is not BondState.BONDED:
            target = LinkState.CONNECTED_UNBONDED
        elif not self._notifying:
            target = LinkState.BONDED
        else:
            target = LinkState.READY
        self._transition(target)

    def _transition(self, state: LinkState) -> None:
        if state is self._state:
            return
        logger.info(f"Link: {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Link listener failed: {e}")
