import asyncio
import sys

import pytest

from overseer.providers.process import (
    EscalationOutcome,
    create_stall_detector,
    create_timeout,
    kill_process_gracefully,
    try_parse_json,
)


def test_stall_detector_fires_once():
    async def scenario():
        calls = []
        detector = create_stall_detector(0.05, lambda: calls.append("stall"))
        await asyncio.sleep(0.15)
        detector.touch()
        await asyncio.sleep(0.1)
        return calls, detector

    calls, detector = asyncio.run(scenario())

    assert calls == ["stall"]
    assert detector.fired is True
    assert detector.active is False


def test_stall_detector_touch_resets_window():
    async def scenario():
        calls = []
        detector = create_stall_detector(0.2, lambda: calls.append("stall"))
        for _ in range(5):
            await asyncio.sleep(0.1)
            detector.touch()
        fired_while_active = list(calls)
        detector.cancel()
        return fired_while_active

    assert asyncio.run(scenario()) == []


def test_stall_detector_cancel_prevents_fire():
    async def scenario():
        calls = []
        detector = create_stall_detector(0.05, lambda: calls.append("stall"))
        detector.cancel()
        await asyncio.sleep(0.1)
        return calls

    assert asyncio.run(scenario()) == []


def test_stall_detector_rejects_non_positive_threshold():
    async def scenario():
        create_stall_detector(0, lambda: None)

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_timeout_fires_after_delay():
    async def scenario():
        timer = create_timeout(0.05)
        await timer
        return timer.fired

    assert asyncio.run(scenario()) is True


def test_cancelled_timeout_leaves_no_pending_handle():
    async def scenario():
        loop = asyncio.get_running_loop()
        timer = create_timeout(60)
        timer.cancel()
        await asyncio.sleep(0)
        pending = [handle for handle in loop._scheduled if not handle.cancelled()]
        return timer, pending

    timer, pending = asyncio.run(scenario())

    assert timer.fired is False
    assert timer.future.cancelled()
    assert pending == []


def _spawn(code):
    return asyncio.create_subprocess_exec(sys.executable, "-c", code)


def test_kill_process_gracefully_terminates():
    async def scenario():
        process = await _spawn("import time; time.sleep(30)")
        outcome = await kill_process_gracefully(process, escalation_seconds=5)
        return process, outcome

    process, outcome = asyncio.run(scenario())

    assert outcome is EscalationOutcome.TERMINATED
    assert process.returncode is not None


@pytest.mark.skipif(sys.platform == "win32", reason="SIGTERM cannot be ignored on Windows")
def test_kill_process_gracefully_escalates_to_sigkill():
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )

    async def scenario():
        process = await asyncio.create_subprocess_exec(
            sys.executable, "-c", code, stdout=asyncio.subprocess.PIPE
        )
        await process.stdout.readline()
        outcome = await kill_process_gracefully(process, escalation_seconds=0.2)
        return process, outcome

    process, outcome = asyncio.run(scenario())

    assert outcome is EscalationOutcome.KILLED
    assert process.returncode == -9


def test_kill_process_gracefully_is_idempotent():
    async def scenario():
        process = await _spawn("pass")
        await process.wait()
        first = await kill_process_gracefully(process, 0.1)
        second = await kill_process_gracefully(process, 0.1)
        return first, second

    assert asyncio.run(scenario()) == (
        EscalationOutcome.ALREADY_EXITED,
        EscalationOutcome.ALREADY_EXITED,
    )


def test_try_parse_json_never_raises():
    assert try_parse_json('{"a": 1}') == {"a": 1}
    assert try_parse_json("{broken") is None
    assert try_parse_json(None) is None
    assert try_parse_json(b"\xff\xfe", default="x") == "x"
    assert try_parse_json("", default=[]) == []
    assert try_parse_json("[" * 100000) is None
