from padlink.hid_link import BondState, HidLink, LinkState, shared_state
from padlink.transport import ConnectionState

HOST = "AA:BB:CC:DD:EE:FF"


def _link():
    link = HidLink()
    states = []
    link.add_listener(states.append)
    link.advertising_started()
    return link, states


def test_send_gated_until_bonded_and_subscribed():
    link, _ = _link()
    link.peer_connected(HOST)
    assert not link.can_send()

    link.notifications_changed(True)
    assert not link.can_send()
    assert link.state is LinkState.CONNECTED_UNBONDED

    link.bond_changed(HOST, BondState.BONDING)
    assert not link.can_send()

    link.bond_changed(HOST, BondState.BONDED)
    assert link.can_send()
    assert link.state is LinkState.READY


def test_connected_reported_only_when_both_conditions_hold():
    link, states = _link()
    link.peer_connected(HOST)
    link.bond_changed(HOST, BondState.BONDED)
    assert shared_state(link.state) is ConnectionState.CONNECTING

    link.notifications_changed(True)
    assert [shared_state(s) for s in states].count(ConnectionState.CONNECTED) == 1
    assert states[-1] is LinkState.READY


def test_unsubscribe_drops_back_to_bonded():
    link, _ = _link()
    link.peer_connected(HOST)
    link.bond_changed(HOST, BondState.BONDED)
    link.notifications_changed(True)
    link.notifications_changed(False)
    assert link.state is LinkState.BONDED
    assert not link.can_send()


def test_disconnect_clears_bond_and_subscription():
    link, _ = _link()
    link.peer_connected(HOST)
    link.bond_changed(HOST, BondState.BONDED)
    link.notifications_changed(True)

    link.peer_disconnected(HOST)
    assert link.state is LinkState.ADVERTISING
    assert link.bond_state is BondState.NONE
    assert not link.notifying


def test_second_peer_is_ignored():
    link, _ = _link()
    link.peer_connected(HOST)
    link.peer_connected("11:22:33:44:55:66")
    link.bond_changed("11:22:33:44:55:66", BondState.BONDED)
    assert link.peer == HOST
    assert link.bond_state is BondState.NONE


def test_bond_before_connection_event_adopts_peer():
    link, _ = _link()
    link.bond_changed(HOST, BondState.BONDED)
    assert link.peer == HOST
    assert link.state is LinkState.BONDED


def test_advertising_failure_is_error():
    link = HidLink()
    link.advertising_failed("too-many-advertisers")
    assert shared_state(link.state) is ConnectionState.ERROR


def test_reset_returns_to_idle():
    link, _ = _link()
    link.peer_connected(HOST)
    link.reset()
    assert link.state is LinkState.IDLE
    assert link.peer is None


def test_subscription_before_connection_event_is_kept():
    link, states = _link()
    link.notifications_changed(True)
    link.peer_connected(HOST)
    assert link.notifying
    assert link.state is LinkState.CONNECTED_UNBONDED

    link.bond_changed(HOST, BondState.BONDED)
    assert link.can_send()
    assert states[-1] is LinkState.READY


def test_reconnect_after_disconnect_starts_unsubscribed():
    link, _ = _link()
    link.peer_connected(HOST)
    link.bond_changed(HOST, BondState.BONDED)
    link.notifications_changed(True)
    link.peer_disconnected(HOST)

    link.peer_connected(HOST)
    assert not link.notifying
    assert link.bond_state is BondState.NONE


def test_advertising_stopped_without_peer_is_idle():
    link, _ = _link()
    assert link.state is LinkState.ADVERTISING
    link.advertising_stopped()
    assert link.state is LinkState.IDLE
