import unittest

from cloud_deployer.cloud.poller import OperationPoller
from cloud_deployer.cloud.resources import Operation, ServiceStatus
from cloud_deployer.errors import OperationFailedError, OperationTimeoutError, RemoteConditionError

from fakes import FakeClock


def make_poller(**kwargs) -> "tuple[OperationPoller, FakeClock]":
    clock = FakeClock()
    options = dict(timeout=10, interval=1, max_interval=4, backoff=2)
    options.update(kwargs)
    return OperationPoller(clock=clock, sleep=clock.sleep, **options), clock


class SequenceFetcher:
    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


def service(status: str, generation: int = 1, observed: int = 1, message=None) -> ServiceStatus:
    condition = {"type": "Ready", "status": status}
    if message:
        condition["message"] = message
    return ServiceStatus(
        {
            "metadata": {"name": "web", "generation": generation},
            "status": {"observedGeneration": observed, "conditions": [condition]},
        }
    )


class PollTests(unittest.TestCase):
    def test_returns_first_terminal_result(self) -> None:
        poller, clock = make_poller()
        fetch = SequenceFetcher("running", "running", "done")
        self.assertEqual(poller.poll(fetch, lambda r: r == "done"), "done")
        self.assertEqual(fetch.calls, 3)
        self.assertEqual(clock.sleeps, [1, 2])

    def test_interval_is_capped(self) -> None:
        poller, clock = make_poller(timeout=100)
        fetch = SequenceFetcher(*(["running"] * 5 + ["done"]))
        poller.poll(fetch, lambda r: r == "done")
        self.assertEqual(clock.sleeps, [1, 2, 4, 4, 4])

    def test_timeout_is_fatal_and_names_the_operation(self) -> None:
        poller, clock = make_poller(timeout=5)
        fetch = SequenceFetcher("running")
        with self.assertRaises(OperationTimeoutError) as ctx:
            poller.poll(fetch, lambda r: False, description="operation operations/acf.1")
        self.assertIn("operations/acf.1", str(ctx.exception))
        self.assertGreaterEqual(clock.now, 5)

    def test_zero_timeout_still_issues_one_request(self) -> None:
        poller, _ = make_poller()
        fetch = SequenceFetcher("running")
        with self.assertRaises(OperationTimeoutError):
            poller.poll(fetch, lambda r: False, timeout=0)
        self.assertEqual(fetch.calls, 1)


class OperationWaitTests(unittest.TestCase):
    def test_done_operation_needs_no_refresh(self) -> None:
        poller, _ = make_poller()
        refresh = SequenceFetcher()
        operation = Operation({"name": "op", "done": True})
        self.assertIs(poller.wait_for_operation(operation, lambda op: refresh()), operation)
        self.assertEqual(refresh.calls, 0)

    def test_refreshes_until_done(self) -> None:
        poller, _ = make_poller()
        operation = Operation({"name": "op"})
        states = SequenceFetcher(Operation({"name": "op"}), Operation({"name": "op", "done": True}))
        result = poller.wait_for_operation(operation, lambda op: states())
        self.assertTrue(result.is_done)
        self.assertEqual(states.calls, 2)

    def test_embedded_error_raises(self) -> None:
        poller, _ = make_poller()
        operation = Operation({"name": "op", "done": True, "error": {"message": "permission denied"}})
        with self.assertRaises(OperationFailedError) as ctx:
            poller.wait_for_operation(operation, lambda op: op)
        self.assertEqual(ctx.exception.message, "permission denied")


class ConditionWaitTests(unittest.TestCase):
    def test_waits_for_ready(self) -> None:
        poller, _ = make_poller()
        fetch = SequenceFetcher(service("Unknown"), service("Unknown"), service("True"))
        self.assertTrue(poller.wait_for_condition(fetch).is_ready)
        self.assertEqual(fetch.calls, 3)

    def test_false_condition_raises_with_message(self) -> None:
        poller, _ = make_poller()
        fetch = SequenceFetcher(service("False", message="quota exceeded"))
        with self.assertRaises(RemoteConditionError) as ctx:
            poller.wait_for_condition(fetch)
        self.assertEqual(str(ctx.exception), "quota exceeded")

    def test_stale_generation_is_not_terminal(self) -> None:
        poller, _ = make_poller()
        fetch = SequenceFetcher(service("True", generation=2, observed=1), service("True", generation=2, observed=2))
        poller.wait_for_condition(fetch)
        self.assertEqual(fetch.calls, 2)

    def test_missing_condition_keeps_polling_until_timeout(self) -> None:
        poller, _ = make_poller(readiness_timeout=3)
        fetch = SequenceFetcher(ServiceStatus({"metadata": {"name": "web"}, "status": {"conditions": []}}))
        with self.assertRaises(OperationTimeoutError) as ctx:
            poller.wait_for_condition(fetch, description="service web Ready condition")
        self.assertEqual(ctx.exception.timeout, 3)


if __name__ == "__main__":
    unittest.main()
