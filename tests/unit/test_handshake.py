from __future__ import annotations

import json

from mcp_probe.probe.handshake import (
    HttpVerificationMachine,
    MessageReceived,
    OutboundNotification,
    OutboundRequest,
    Phase,
    ProcessExited,
    ProcessFailed,
    StdioVerificationMachine,
    StdoutReceived,
    TimerFired,
    ToolDiscoveryMachine,
)


def _machine() -> ToolDiscoveryMachine:
    return ToolDiscoveryMachine("srv", client_name="test", client_version="0")


def _line(obj: dict) -> StdoutReceived:
    text = json.dumps(obj)
    return StdoutReceived(text + "\n", (text,))


def _initialized(machine: ToolDiscoveryMachine) -> None:
    machine.start()
    machine.mark_sent(1)
    machine.feed(_line({"jsonrpc": "2.0", "id": 1, "result": {}}))
    machine.mark_sent(2)


def test_start_sends_initialize_once() -> None:
    m = _machine()

    out = m.start()

    assert len(out) == 1
    assert isinstance(out[0], OutboundRequest)
    assert out[0].method == "initialize"
    assert out[0].params["protocolVersion"] == "2024-11-05"
    assert out[0].params["clientInfo"] == {"name": "test", "version": "0"}
    assert m.phase is Phase.AWAITING_INITIALIZE
    assert m.start() == []


def test_initialize_result_emits_notification_then_tools_list() -> None:
    m = _machine()
    m.start()
    m.mark_sent(1)

    out = m.feed(_line({"jsonrpc": "2.0", "id": 1, "result": {"serverInfo": {"name": "x"}}}))

    assert out == [OutboundNotification("notifications/initialized"), OutboundRequest("tools/list")]
    assert m.phase is Phase.AWAITING_TOOLS
    assert not m.done


def test_tools_result_finishes_with_tools() -> None:
    m = _machine()
    _initialized(m)

    m.feed(_line({"jsonrpc": "2.0", "id": 2, "result": {"tools": [{"name": "a"}, {"name": "b"}]}}))

    assert m.done
    assert m.phase is Phase.DONE
    assert m.result is not None
    assert [t["name"] for t in m.result.tools] == ["a", "b"]
    assert m.result.error is None


def test_tools_result_without_tools_is_empty_success() -> None:
    m = _machine()
    _initialized(m)

    m.feed(_line({"jsonrpc": "2.0", "id": 2, "result": {}}))

    assert m.result is not None
    assert m.result.tools == []
    assert m.result.error is None


def test_stale_response_does_not_advance() -> None:
    m = _machine()
    _initialized(m)

    # A late duplicate of the initialize response.
    out = m.feed(_line({"jsonrpc": "2.0", "id": 1, "result": {"tools": [{"name": "stale"}]}}))

    assert out == []
    assert not m.done
    assert m.phase is Phase.AWAITING_TOOLS


def test_unexpected_id_before_mark_sent_is_ignored() -> None:
    m = _machine()
    m.start()

    m.feed(_line({"jsonrpc": "2.0", "id": 1, "result": {}}))

    assert m.phase is Phase.AWAITING_INITIALIZE


def test_initialize_error() -> None:
    m = _machine()
    m.start()
    m.mark_sent(1)

    m.feed(_line({"jsonrpc": "2.0", "id": 1, "error": {"code": -1, "message": "nope"}}))

    assert m.result is not None
    assert m.result.error == "Initialize error: nope"


def test_tools_list_error_without_message() -> None:
    m = _machine()
    _initialized(m)

    m.feed(_line({"jsonrpc": "2.0", "id": 2, "error": {"code": -32601}}))

    assert m.result is not None
    assert m.result.error == 'Tools/list error: {"code": -32601}'


def test_unrelated_error_fails_immediately() -> None:
    m = _machine()
    m.start()
    m.mark_sent(1)

    m.feed(_line({"jsonrpc": "2.0", "error": {"message": "crashed"}}))

    assert m.result is not None
    assert m.result.error == "Server error: crashed"


def test_garbage_lines_are_skipped() -> None:
    m = _machine()
    m.start()
    m.mark_sent(1)

    ok = json.dumps({"jsonrpc": "2.0", "id": 1, "result": {}})
    out = m.feed(StdoutReceived("", ("npm WARN something", "{not json", ok)))

    assert len(out) == 2
    assert m.phase is Phase.AWAITING_TOOLS


def test_terminal_events() -> None:
    crashed = _machine()
    crashed.start()
    crashed.feed(ProcessExited(1, "Traceback: boom"))
    assert crashed.result is not None
    assert crashed.result.error == "Process exited with code 1. stderr: Traceback: boom"

    closed = _machine()
    closed.start()
    closed.feed(ProcessExited(0))
    assert closed.result is not None
    assert closed.result.error == "Process closed without response"

    errored = _machine()
    errored.start()
    errored.feed(ProcessFailed("EPIPE"))
    assert errored.result is not None
    assert errored.result.error == "Process error: EPIPE"

    slow = _machine()
    slow.start()
    slow.feed(TimerFired(45.0))
    assert slow.result is not None
    assert slow.result.error == "Timeout after 45s"


def test_complete_finishes_with_given_tools() -> None:
    m = ToolDiscoveryMachine("srv", client_name="test", client_version="0", server_type="http")
    _initialized(m)

    m.complete([])
    m.fail("late")

    assert m.phase is Phase.DONE
    assert m.result is not None
    assert m.result.tools == []
    assert m.result.error is None
    assert m.result.server_type == "http"


def test_finalization_is_idempotent() -> None:
    m = _machine()
    m.start()
    m.feed(TimerFired(45.0))
    first = m.result

    m.mark_sent(1)
    m.feed(_line({"jsonrpc": "2.0", "id": 1, "result": {}}))
    m.feed(ProcessExited(1, "late"))
    m.fail("again")

    assert m.result is first


def test_http_message_events() -> None:
    m = ToolDiscoveryMachine("h", client_name="t", client_version="0", server_type="http")
    m.start()
    m.mark_sent(1)
    m.feed(MessageReceived({"jsonrpc": "2.0", "id": 1, "result": {}}))
    m.mark_sent(4)
    m.feed(MessageReceived({"jsonrpc": "2.0", "id": 4, "result": {"tools": [{"name": "x"}]}}))

    assert m.result is not None
    assert m.result.server_type == "http"
    assert m.result.tools == [{"name": "x"}]


# -- stdio verification -------------------------------------------------------


def test_verify_connected_on_jsonrpc_output() -> None:
    m = StdioVerificationMachine("v")

    m.feed(StdoutReceived('{"jsonrpc":"2.0","id":1,"result":{"serverInfo":{"name":"n","version":"1"}}}'))

    assert m.result is not None
    assert m.result.status == "connected"
    assert m.result.server_info is not None
    assert m.result.server_info.name == "n"
    assert m.result.server_info.version == "1"


def test_verify_detects_output_split_across_chunks() -> None:
    m = StdioVerificationMachine("v")

    m.feed(StdoutReceived('{"json'))
    assert not m.done
    m.feed(StdoutReceived('rpc":"2.0"}'))

    assert m.result is not None
    assert m.result.status == "connected"


def test_verify_exit_with_mcp_banner_is_connected() -> None:
    m = StdioVerificationMachine("v")
    m.feed(StdoutReceived("MCP server ready\n"))

    m.feed(ProcessExited(0))

    assert m.result is not None
    assert m.result.status == "connected"
    assert m.result.server_info is None


def test_verify_nonzero_exit_reports_excerpts() -> None:
    m = StdioVerificationMachine("v")
    m.feed(StdoutReceived("usage: x\n"))

    m.feed(ProcessExited(2, "E" * 600))

    assert m.result is not None
    assert m.result.status == "failed"
    assert m.result.error is not None
    assert m.result.error.startswith("Process exited with code 2. stderr: ")
    assert "E" * 500 in m.result.error
    assert "E" * 501 not in m.result.error
    assert m.result.error.endswith(". stdout: usage: x\n")


def test_verify_mcp_banner_split_across_chunks() -> None:
    m = StdioVerificationMachine("v")
    m.feed(StdoutReceived("starting M"))
    m.feed(StdoutReceived("CP bridge\n"))

    m.feed(ProcessExited(0))

    assert m.result is not None
    assert m.result.status == "connected"


def test_verify_finds_server_info_after_large_noise() -> None:
    m = StdioVerificationMachine("v")
    for _ in range(40):
        m.feed(StdoutReceived("x" * 8000 + "\n"))
    assert not m.done

    m.feed(StdoutReceived('{"jsonrpc":"2.0","id":1,"result":{"serverInfo":{"name":"late","version":"9"}}}\n'))

    assert m.result is not None
    assert m.result.status == "connected"
    assert m.result.server_info is not None
    assert m.result.server_info.name == "late"


def test_verify_exit_excerpt_is_start_of_stdout() -> None:
    m = StdioVerificationMachine("v")
    m.feed(StdoutReceived("usage: " + "a" * 600))
    m.feed(StdoutReceived("b" * 100_000))

    m.feed(ProcessExited(1))

    assert m.result is not None
    assert m.result.error == "Process exited with code 1. stdout: usage: " + "a" * 493


def test_verify_clean_exit_without_output_is_pending() -> None:
    m = StdioVerificationMachine("v")
    m.feed(ProcessExited(0))
    assert m.result is not None
    assert m.result.status == "pending"
    assert m.result.error == "No response from server"

    with_stderr = StdioVerificationMachine("v")
    with_stderr.feed(ProcessExited(0, "waiting for config"))
    assert with_stderr.result is not None
    assert with_stderr.result.error == "waiting for config"


def test_verify_timeout_is_pending_and_final() -> None:
    m = StdioVerificationMachine("v")
    m.feed(TimerFired(30.0))

    m.feed(StdoutReceived('{"jsonrpc":"2.0"}'))

    assert m.result is not None
    assert m.result.status == "pending"
    assert m.result.error is None


def test_verify_process_failure() -> None:
    m = StdioVerificationMachine("v")
    m.feed(ProcessFailed("read error"))

    assert m.result is not None
    assert m.result.status == "failed"
    assert m.result.error == "read error"


# -- http verification --------------------------------------------------------


def test_http_verify_outcomes() -> None:
    ok = HttpVerificationMachine("h", client_name="t", client_version="0")
    assert [o.method for o in ok.start()] == ["initialize"]
    assert ok.start() == []
    ok.feed(MessageReceived({"id": 1, "result": {"serverInfo": {"name": "remote", "version": "9"}}}))
    assert ok.result is not None
    assert ok.result.status == "connected"
    assert ok.result.server_info is not None
    assert ok.result.server_info.name == "remote"

    bare = HttpVerificationMachine("h", client_name="t", client_version="0")
    bare.feed(MessageReceived({"id": 1, "result": {}}))
    assert bare.result is not None
    assert bare.result.status == "connected"
    assert bare.result.server_info is None

    slow = HttpVerificationMachine("h", client_name="t", client_version="0")
    slow.feed(TimerFired(6.0))
    assert slow.result is not None
    assert (slow.result.status, slow.result.error) == ("pending", "Connection timeout")

    broken = HttpVerificationMachine("h", client_name="t", client_version="0")
    broken.fail("HTTP 500: Internal Server Error")
    broken.feed(MessageReceived({"id": 1, "result": {}}))
    assert broken.result is not None
    assert broken.result.status == "failed"
