"""
Presentation adapters for the dashboard shell.

`ParticleField.render_frame` drives the decorative particle/globe background,
and `WalletSession.on_wallet_event` keeps track of the connected wallet. Neither
touches the ledger; they only hold display state.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class Frame:
    positions: np.ndarray
    particles_rotation: tuple
    globe_rotation: tuple


class ParticleField:
    def __init__(self, count: int = 1000, spread: float = 20.0, seed: Optional[int] = None):
        rng = np.random.default_rng(seed)
        self.positions = (rng.random((count, 3)) - 0.5) * spread
        self.particles_rotation = np.zeros(2)  # x, y
        self.globe_rotation = np.zeros(2)
        # per-particle phase so the drift is not uniform
        self._phase = np.arange(count) * 3 + 1

    def render_frame(self, now: Optional[float] = None) -> Frame:
        """Advance the scene by one tick and return a snapshot of it."""
        now = time.time() if now is None else now
        self.particles_rotation += (0.0005, 0.001)
        self.globe_rotation += (0.001, 0.002)
        self.positions[:, 1] += np.sin(now + self._phase) * 0.001
        return Frame(
            positions=self.positions.copy(),
            particles_rotation=tuple(self.particles_rotation),
            globe_rotation=tuple(self.globe_rotation),
        )


def short_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}" if address else ""


class WalletSession:
    """
    Wallet-provider events: connect, accountsChanged, chainChanged, disconnect.
    Listeners are called with the session after every change.
    """

    def __init__(self):
        self.address: Optional[str] = None
        self.chain_id: Optional[str] = None
        self.reload_required = False
        self._listeners: List[Callable[["WalletSession"], None]] = []

    @property
    def connected(self) -> bool:
        return self.address is not None

    @property
    def display_address(self) -> str:
        return short_address(self.address or "")

    def subscribe(self, listener: Callable[["WalletSession"], None]) -> None:
        self._listeners.append(listener)

    def on_wallet_event(self, event: str, payload=None) -> None:
        if event in ("connect", "accountsChanged"):
            accounts = payload or []
            if not accounts:
                self.disconnect()
                return
            self.address = accounts[0]
            logger.info(f"Wallet {event}: {self.display_address}")
        elif event == "chainChanged":
            self.chain_id = payload
            # contract handles are bound to the old chain
            self.reload_required = True
            logger.info(f"Chain changed to {payload}")
        elif event == "disconnect":
            self.disconnect()
            return
        else:
            raise ValueError(f"Unknown wallet event: {event}")
        self._notify()

    def disconnect(self) -> None:
        self.address = None
        logger.info("Wallet disconnected")
        self._notify()

    def _notify(self) -> None:
        for listener in self._listeners:
            listener(self)
