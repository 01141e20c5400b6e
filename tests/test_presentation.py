import numpy as np
import pytest

from greenfi.presentation import ParticleField, WalletSession, short_address

ACCOUNT = "0x1234567890abcdef1234567890abcdef12345678"


def test_render_frame_drifts_only_vertically():
    field = ParticleField(count=50, seed=7)
    before = field.positions.copy()

    frame = field.render_frame(now=1.0)

    assert frame.positions.shape == (50, 3)
    np.testing.assert_array_equal(frame.positions[:, 0], before[:, 0])
    np.testing.assert_array_equal(frame.positions[:, 2], before[:, 2])
    assert np.all(np.abs(frame.positions[:, 1] - before[:, 1]) <= 0.001)
    assert np.abs(before).max() <= 10


def test_render_frame_rotates_scene():
    field = ParticleField(count=10, seed=1)
    field.render_frame(now=0.0)
    frame = field.render_frame(now=0.016)

    assert frame.particles_rotation == pytest.approx((0.001, 0.002))
    assert frame.globe_rotation == pytest.approx((0.002, 0.004))


def test_wallet_connect_and_account_change():
    session = WalletSession()
    updates = []
    session.subscribe(lambda s: updates.append(s.address))

    session.on_wallet_event("connect", [ACCOUNT])
    assert session.connected
    assert session.display_address == "0x1234...5678"

    session.on_wallet_event("accountsChanged", [])
    assert not session.connected
    assert updates == [ACCOUNT, None]


def test_chain_change_requires_reload():
    session = WalletSession()
    session.on_wallet_event("chainChanged", "0xaa36a7")
    assert session.reload_required
    assert session.chain_id == "0xaa36a7"


def test_unknown_wallet_event():
    with pytest.raises(ValueError):
        WalletSession().on_wallet_event("message", {})


def test_short_address_empty():
    assert short_address("") == ""
