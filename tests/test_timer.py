from datetime import timedelta

from pixcheckout.timer import ExpirationTimer, parse_expiration, seconds_until

from conftest import T0


async def test_countdown_for_payment_expiring_in_90_seconds(clock):
    expired_calls = []
    timer = ExpirationTimer((T0 + timedelta(seconds=90)).isoformat(), clock=clock,
                            on_expired=lambda: expired_calls.append(clock()))

    assert await timer.tick() == "01:30"
    assert not timer.expired

    clock.advance(31)
    assert await timer.tick() == "00:59"

    clock.advance(58)  # t+89
    assert await timer.tick() == "00:01"
    assert not timer.expired

    clock.advance(1)  # t+90
    assert await timer.tick() == "00:00"
    assert timer.expired

    clock.advance(1)  # t+91
    assert await timer.tick() == "00:00"
    assert expired_calls == [T0 + timedelta(seconds=90)]


async def test_missing_or_bad_timestamp_shows_placeholder(clock):
    for value in (None, "", "not-a-date"):
        timer = ExpirationTimer(value, clock=clock)
        assert await timer.tick() == "--:--"
        assert timer.countdown() == "--:--"
        assert not timer.expired


async def test_expiry_callback_fires_once(clock):
    calls = []

    async def on_expired():
        calls.append(1)

    timer = ExpirationTimer(T0 - timedelta(seconds=1), clock=clock, on_expired=on_expired)
    await timer.tick()
    await timer.tick()
    clock.advance(10)
    await timer.tick()
    assert calls == [1]


async def test_failing_callback_does_not_break_the_timer(clock):
    def boom():
        raise RuntimeError("listener bug")

    timer = ExpirationTimer(T0, clock=clock, on_expired=boom)
    assert await timer.tick() == "00:00"
    assert timer.expired


async def test_warnings_every_15_seconds_in_last_minute(clock):
    warnings = []
    timer = ExpirationTimer(T0 + timedelta(seconds=75), clock=clock, on_warning=warnings.append)

    for _ in range(75):
        await timer.tick()
        await timer.tick()  # same second twice, no duplicate warning
        clock.advance(1)

    assert warnings == [45, 30, 15]


async def test_run_stops_after_expiry(clock):
    timer = ExpirationTimer(T0 - timedelta(minutes=1), clock=clock, interval=0)
    await timer.run()
    assert timer.expired


def test_naive_timestamps_are_utc():
    parsed = parse_expiration("2026-10-19T12:00:00")
    assert parsed == T0
    assert parse_expiration("2026-10-19T12:00:00Z") == T0
    assert parse_expiration("2026-10-19T09:00:00-03:00") == T0


def test_seconds_until_is_pure_in_wall_clock():
    stored = (T0 + timedelta(minutes=5)).isoformat()
    assert seconds_until(stored, T0) == 300
    assert seconds_until(stored, T0 + timedelta(minutes=6)) == -60
    assert seconds_until(None, T0) is None
