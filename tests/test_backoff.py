from modules.backoff import BASE_DELAY_MS, MAX_DELAY_MS, BackoffController

# ------------------------- Tests ------------------------- #

def test_defaults():
    backoff = BackoffController()
    assert backoff.next_delay("market") == BASE_DELAY_MS == 1000
    assert MAX_DELAY_MS == 10000


def test_delay_sequence_is_capped():
    backoff = BackoffController()
    delays = []
    for _ in range(6):
        backoff.on_rate_limited("market")
        delays.append(backoff.next_delay("market"))
    assert delays == [1000, 2000, 4000, 8000, 10000, 10000]
    assert backoff.state("market").consecutive_failures == 6


def test_success_resets():
    backoff = BackoffController()
    for _ in range(3):
        backoff.on_rate_limited("market")
    backoff.on_success("market")
    state = backoff.state("market")
    assert state.current_delay_ms == 1000
    assert state.consecutive_failures == 0


def test_other_errors_do_not_touch_backoff():
    backoff = BackoffController()
    backoff.on_rate_limited("market")
    backoff.on_rate_limited("market")
    backoff.on_other_error("market")
    state = backoff.state("market")
    assert state.current_delay_ms == 2000
    assert state.consecutive_failures == 2


def test_streams_back_off_independently():
    backoff = BackoffController(base_ms=10, max_ms=40)
    for _ in range(4):
        backoff.on_rate_limited("position")
    assert backoff.next_delay("position") == 40
    assert backoff.next_delay("holdings") == 10


def test_state_is_a_copy():
    backoff = BackoffController()
    snapshot = backoff.state("market")
    snapshot.current_delay_ms = 99
    assert backoff.next_delay("market") == 1000
