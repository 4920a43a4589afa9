from .fixtures import *  # noqa


def _feed(*clients):
    it = iter(clients)
    return lambda account: next(it)


async def test_forced_refresh_after_idle_timeout():
    clock = FakeClock()
    client = FakeMailClient()
    w = make_watcher(client, clock=clock, idle_timeout=20)
    sup = sv.Supervisor([w], tick=60)
    await sup.start_all()
    try:
        await eventually(client.polling.is_set)
        clock.advance(19 * 60)
        await sup.tick()
        assert client.cancels == 0

        clock.advance(2 * 60)
        await sup.tick()
        assert client.cancels == 1
        await eventually(lambda: client.search_calls == 2)
        await eventually(client.polling.is_set)
        assert w.idle_age() == 0
        assert sup.restarts == 0

        await sup.tick()
        assert client.cancels == 1
    finally:
        await sup.shutdown()


async def test_zero_idle_timeout_disables_refresh():
    clock = FakeClock()
    client = FakeMailClient()
    w = make_watcher(client, clock=clock, idle_timeout=0)
    sup = sv.Supervisor([w])
    await sup.start_all()
    try:
        await eventually(client.polling.is_set)
        clock.advance(24 * 3600)
        await sup.tick()
        assert client.cancels == 0
    finally:
        await sup.shutdown()


async def test_disconnected_socket_is_replaced():
    first, second = FakeMailClient(), FakeMailClient()
    w = make_watcher(factory=_feed(first, second))
    sup = sv.Supervisor([w])
    await sup.start_all()
    try:
        await eventually(first.polling.is_set)
        old_task = w.task
        first.disconnected = True
        await sup.tick()
        assert sup.restarts == 1
        assert w.client is second
        assert w.task is not old_task and w.running
        assert first.logged_out
        await eventually(second.polling.is_set)
    finally:
        await sup.shutdown()


async def test_dead_task_is_restarted():
    first, second = FakeMailClient(), FakeMailClient()
    second.add_message(9, subject='arrived while down')
    w = make_watcher(factory=_feed(first, second))
    sup = sv.Supervisor([w])
    await sup.start_all()
    try:
        await eventually(first.polling.is_set)
        first.fail(MailConnectionError('reset by peer'))
        await eventually(lambda: not w.running)
        await sup.tick()
        assert w.running
        assert w.client is second
        # Reconnect baseline is silent; mail that arrived during the outage is not pushed
        assert w.notifier.events == []
    finally:
        await sup.shutdown()


async def test_restart_is_retried_once_per_tick(caplog):
    clients = [FakeMailClient(), FakeMailClient(login_ok=False), FakeMailClient(login_ok=False),
               FakeMailClient()]
    w = make_watcher(factory=_feed(*clients))
    sup = sv.Supervisor([w])
    await sup.start_all()
    try:
        await eventually(clients[0].polling.is_set)
        clients[0].fail(MailConnectionError('gone'))
        await eventually(lambda: not w.running)

        with caplog.at_level(logging.ERROR):
            await sup.tick()
        assert not w.running
        assert sup.restarts == 0
        assert clients[1].logged_out and clients[2].logged_out
        assert any('next attempt' in r.getMessage() for r in caplog.records)

        await sup.tick()
        assert w.running
        assert w.client is clients[3]
        assert sup.restarts == 1
    finally:
        await sup.shutdown()


async def test_start_retries_once_and_survives_exceptions():
    calls = []

    def factory(account):
        calls.append(account.label)
        if len(calls) == 1:
            raise RuntimeError('boom')
        return FakeMailClient()

    w = make_watcher(factory=factory)
    sup = sv.Supervisor([w])
    await sup.start_all()
    try:
        assert w.running
        assert len(calls) == 2
    finally:
        await sup.shutdown()


async def test_disabled_account_is_never_started(caplog):
    enabled_client = FakeMailClient()
    built = []
    disabled = make_watcher(factory=lambda account: built.append(account) or FakeMailClient(),
                            enabled=False, label='old')
    enabled = make_watcher(enabled_client)
    sup = sv.Supervisor([disabled, enabled])
    with caplog.at_level(logging.INFO):
        await sup.start_all()
    try:
        await sup.tick()
        assert built == []
        assert not disabled.running
        assert enabled.running
        assert any('[old]' in r.getMessage() and 'disabled' in r.getMessage() for r in caplog.records)
    finally:
        await sup.shutdown()


async def test_watchers_are_independent():
    a, b = FakeMailClient(), FakeMailClient()
    wa = make_watcher(a, label='a')
    wb = make_watcher(b, label='b')
    sup = sv.Supervisor([wa, wb])
    await sup.start_all()
    try:
        await eventually(lambda: a.polling.is_set() and b.polling.is_set())
        a.fail(MailConnectionError('down'))
        await eventually(lambda: not wa.running)
        b.add_message(1, subject='for b')
        b.push_exists()
        await eventually(lambda: wb.notifier.subjects == ['for b'])
        assert wb.running
    finally:
        await sup.shutdown()


async def test_run_until_stopped():
    client = FakeMailClient()
    w = make_watcher(client)
    sup = sv.Supervisor([w], tick=0.01, grace=1)
    stop = asyncio.Event()
    runner = asyncio.create_task(sup.run(stop))
    await eventually(client.polling.is_set)
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(runner, 2)
    assert client.logged_out
    assert not w.running
    assert w.state is wt.WatcherState.DISCONNECTED


async def test_shutdown_logs_stop_errors(caplog):
    w = make_watcher()

    async def broken_stop(grace):
        raise RuntimeError('cannot stop')
    w.stop = broken_stop
    sup = sv.Supervisor([w])
    with caplog.at_level(logging.WARNING):
        await sup.shutdown()
    assert any('cannot stop' in r.getMessage() for r in caplog.records)
