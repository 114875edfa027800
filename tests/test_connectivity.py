from birthday_sync.connectivity import ConnectivityMonitor


def test_callbacks_fire_on_transitions_only() -> None:
    monitor = ConnectivityMonitor(online=True)
    seen: list[bool] = []
    monitor.on_connectivity_change(seen.append)

    monitor.set_online(True)
    monitor.set_online(False)
    monitor.set_online(False)
    monitor.set_online(True)

    assert seen == [False, True]
    assert monitor.is_online() is True


def test_unsubscribe_stops_notifications() -> None:
    monitor = ConnectivityMonitor(online=False)
    seen: list[bool] = []
    unsubscribe = monitor.on_connectivity_change(seen.append)

    unsubscribe()
    monitor.set_online(True)

    assert seen == []


def test_failing_callback_does_not_block_others() -> None:
    monitor = ConnectivityMonitor(online=False)
    seen: list[bool] = []

    def broken(online: bool) -> None:
        raise RuntimeError("listener failed")

    monitor.on_connectivity_change(broken)
    monitor.on_connectivity_change(seen.append)
    monitor.set_online(True)

    assert seen == [True]
