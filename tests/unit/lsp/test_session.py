"""
Unit tests for LspSession against an in-memory server.

Covers the lifecycle state machine, document synchronisation, the request
façade, server-initiated traffic and failure handling.
"""

import asyncio
import os

import pytest
from loguru import logger

from lsmcp.exceptions import (
    DocumentStateError,
    ErrorCodes,
    ProtocolError,
    RequestTimeoutError,
    ServerExitedError,
    SessionStateError,
    TransportError,
)
from lsmcp.lsp.session import LspSession
from lsmcp.lsp.types import Location, Position, Range, SessionState, path_to_uri
from lsp_fakes import (
    INITIALIZE_RESULT,
    PROJECT_ROOT,
    FakeProcess,
    fast_options,
    settle,
    wait_until,
)

URI = "file:///tmp/lsmcp-project/a.ts"

RANGE = {"start": {"line": 0, "character": 6}, "end": {"line": 0, "character": 7}}


def publish(server, uri, *messages):
    server.notify(
        "textDocument/publishDiagnostics",
        {
            "uri": uri,
            "diagnostics": [{"range": RANGE, "message": message} for message in messages],
        },
    )


async def answer_with_error(server, method, task, code, message="error"):
    await wait_until(lambda: len(server.requests(method)) == 1)
    server.reply_error(server.last_request(method)["id"], code, message)
    return await asyncio.gather(task, return_exceptions=True)


@pytest.mark.unit
class TestInitialize:
    @pytest.mark.asyncio
    async def test_handshake_reaches_ready(self, make_session):
        session, server = make_session()
        assert session.state is SessionState.UNINITIALIZED

        result = await session.initialize()

        assert session.state is SessionState.READY
        assert result == INITIALIZE_RESULT
        assert session.capabilities == INITIALIZE_RESULT["capabilities"]
        assert session.server_info == {"name": "fake-server", "version": "1.0"}
        assert [m["method"] for m in server.messages] == ["initialize", "initialized"]

        params = server.last_request("initialize")["params"]
        assert params["processId"] == os.getpid()
        assert params["rootUri"] == path_to_uri(PROJECT_ROOT)
        assert params["workspaceFolders"][0]["uri"] == path_to_uri(PROJECT_ROOT)
        assert params["clientInfo"]["name"] == "lsmcp"
        assert params["capabilities"]["textDocument"]["definition"]["linkSupport"] is True
        assert "initializationOptions" not in params
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_deno_gets_default_initialization_options(self, make_session):
        session, server = make_session(language_id="deno")
        await session.initialize()
        params = server.last_request("initialize")["params"]
        assert params["initializationOptions"] == {"enable": True, "lint": True, "unstable": True}
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_twice_is_a_state_error(self, ready_session):
        session, server = await ready_session()
        with pytest.raises(SessionStateError):
            await session.initialize()
        assert len(server.requests("initialize")) == 1
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_error_terminates_session(self, make_session):
        session, server = make_session()
        del server.results["initialize"]
        task = asyncio.ensure_future(session.initialize())

        await wait_until(lambda: len(server.requests("initialize")) == 1)
        assert session.state is SessionState.INITIALIZING
        (error,) = await answer_with_error(
            server, "initialize", task, ErrorCodes.InternalError, "cannot start"
        )

        assert isinstance(error, ProtocolError)
        assert error.message == "cannot start"
        assert session.state is SessionState.TERMINATED
        assert server.notifications("initialized") == []

    @pytest.mark.asyncio
    async def test_operations_before_ready_touch_nothing(self, make_session):
        session, server = make_session()
        with pytest.raises(SessionStateError) as excinfo:
            await session.get_hover(URI, {"line": 0, "character": 0})
        assert excinfo.value.state is SessionState.UNINITIALIZED
        with pytest.raises(SessionStateError):
            await session.open_document(URI, "text")
        assert server.write_count == 0


@pytest.mark.unit
class TestDocumentSync:
    @pytest.mark.asyncio
    async def test_open_twice_sends_one_did_open(self, ready_session):
        session, server = await ready_session()

        assert await session.open_document(URI, "const x = 1;") is True
        assert await session.open_document(URI, "const x = 1;") is False

        (did_open,) = server.notifications("textDocument/didOpen")
        assert did_open["params"]["textDocument"] == {
            "uri": URI,
            "languageId": "typescript",
            "version": 1,
            "text": "const x = 1;",
        }
        assert session.open_documents == [URI]
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_close_of_unopened_document_sends_nothing(self, ready_session):
        session, server = await ready_session()
        assert await session.close_document(URI) is False
        assert server.notifications("textDocument/didClose") == []
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_close_forgets_document(self, ready_session):
        session, server = await ready_session()
        await session.open_document(URI, "x")
        assert await session.close_document(URI) is True

        (did_close,) = server.notifications("textDocument/didClose")
        assert did_close["params"] == {"textDocument": {"uri": URI}}
        with pytest.raises(DocumentStateError):
            session.get_diagnostics(URI)
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_update_sends_full_text_with_next_version(self, ready_session):
        session, server = await ready_session()
        await session.open_document(URI, "let a = 1;", language_id="javascript")
        document = await session.update_document(URI, "let a = 2;")

        assert document.version == 2
        (did_change,) = server.notifications("textDocument/didChange")
        assert did_change["params"] == {
            "textDocument": {"uri": URI, "version": 2},
            "contentChanges": [{"text": "let a = 2;"}],
        }
        assert server.notifications("textDocument/didOpen")[0]["params"]["textDocument"][
            "languageId"
        ] == "javascript"
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_update_of_unopened_document_raises(self, ready_session):
        session, server = await ready_session()
        writes = server.write_count
        with pytest.raises(DocumentStateError):
            await session.update_document(URI, "text")
        assert server.write_count == writes
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_notifications_keep_issue_order(self, ready_session):
        session, server = await ready_session()
        await session.open_document(URI, "v1")
        await asyncio.gather(
            session.update_document(URI, "v2"),
            session.update_document(URI, "v3"),
            session.update_document(URI, "v4"),
        )
        versions = [
            m["params"]["textDocument"]["version"]
            for m in server.notifications("textDocument/didChange")
        ]
        assert versions == [2, 3, 4]
        await session.shutdown()


@pytest.mark.unit
class TestRequests:
    @pytest.mark.asyncio
    async def test_hover(self, ready_session):
        session, server = await ready_session(
            {"textDocument/hover": {"contents": "const x: number"}}
        )
        await session.open_document(URI, "const x = 1;")

        hover = await session.get_hover(URI, {"line": 0, "character": 6})

        assert hover == {"contents": "const x: number"}
        assert server.last_request("textDocument/hover")["params"] == {
            "textDocument": {"uri": URI},
            "position": {"line": 0, "character": 6},
        }
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_request_on_unopened_document_raises(self, ready_session):
        session, server = await ready_session({"textDocument/hover": None})
        with pytest.raises(DocumentStateError):
            await session.get_hover(URI, Position(line=0, character=0))
        assert server.requests("textDocument/hover") == []
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_definition_links_are_normalized(self, ready_session):
        link = {
            "targetUri": "file:///tmp/lsmcp-project/b.ts",
            "targetRange": {"start": {"line": 0, "character": 0}, "end": {"line": 3, "character": 1}},
            "targetSelectionRange": RANGE,
        }
        session, server = await ready_session({"textDocument/definition": [link]})
        await session.open_document(URI, "x")

        assert await session.get_definition(URI, Position(line=0, character=6)) == [link]
        locations = await session.get_definition_locations(URI, Position(line=0, character=6))
        assert locations == [
            Location(uri="file:///tmp/lsmcp-project/b.ts", range=Range.model_validate(RANGE))
        ]
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_single_definition_location_becomes_list(self, ready_session):
        session, server = await ready_session(
            {"textDocument/definition": {"uri": URI, "range": RANGE}}
        )
        await session.open_document(URI, "x")
        locations = await session.get_definition_locations(URI, {"line": 0, "character": 6})
        assert [location.uri for location in locations] == [URI]
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_references_pass_include_declaration(self, ready_session):
        session, server = await ready_session(
            {"textDocument/references": [{"uri": URI, "range": RANGE}]}
        )
        await session.open_document(URI, "x")
        references = await session.get_references(
            URI, {"line": 0, "character": 6}, include_declaration=False
        )
        assert references == [{"uri": URI, "range": RANGE}]
        params = server.last_request("textDocument/references")["params"]
        assert params["context"] == {"includeDeclaration": False}
        await session.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "result",
        [
            [{"label": "toFixed"}, {"label": "toString"}],
            {"isIncomplete": False, "items": [{"label": "toFixed"}, {"label": "toString"}]},
        ],
    )
    async def test_completion_shapes_are_unwrapped(self, ready_session, result):
        session, server = await ready_session({"textDocument/completion": result})
        await session.open_document(URI, "x.")
        items = await session.get_completion(URI, {"line": 0, "character": 2})
        assert [item["label"] for item in items] == ["toFixed", "toString"]
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_completion_resolve_and_signature_help(self, ready_session):
        session, server = await ready_session(
            {
                "completionItem/resolve": lambda item: dict(item, detail="resolved"),
                "textDocument/signatureHelp": {"signatures": [{"label": "f(a: number)"}]},
            }
        )
        await session.open_document(URI, "f(")
        assert await session.resolve_completion_item({"label": "f"}) == {
            "label": "f",
            "detail": "resolved",
        }
        help_ = await session.get_signature_help(URI, {"line": 0, "character": 2})
        assert help_["signatures"][0]["label"] == "f(a: number)"
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_code_actions_default_context(self, ready_session):
        session, server = await ready_session({"textDocument/codeAction": None})
        await session.open_document(URI, "x")
        assert await session.get_code_actions(URI, RANGE) == []
        params = server.last_request("textDocument/codeAction")["params"]
        assert params["range"] == RANGE
        assert params["context"] == {"diagnostics": []}
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_formatting_requests(self, ready_session):
        edit = {"range": RANGE, "newText": "  "}
        session, server = await ready_session(
            {"textDocument/formatting": [edit], "textDocument/rangeFormatting": [edit]}
        )
        await session.open_document(URI, "x")

        assert await session.format_document(URI) == [edit]
        assert server.last_request("textDocument/formatting")["params"]["options"] == {
            "tabSize": 2,
            "insertSpaces": True,
        }
        assert await session.format_range(URI, RANGE, {"tabSize": 4, "insertSpaces": False}) == [edit]
        params = server.last_request("textDocument/rangeFormatting")["params"]
        assert params["options"] == {"tabSize": 4, "insertSpaces": False}
        assert params["range"] == RANGE
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_rename(self, ready_session):
        workspace_edit = {"changes": {URI: [{"range": RANGE, "newText": "y"}]}}
        session, server = await ready_session(
            {
                "textDocument/prepareRename": {"range": RANGE, "placeholder": "x"},
                "textDocument/rename": workspace_edit,
            }
        )
        await session.open_document(URI, "const x = 1;")

        assert await session.prepare_rename(URI, {"line": 0, "character": 6}) == RANGE
        assert await session.rename_symbol(URI, {"line": 0, "character": 6}, "y") == workspace_edit
        assert server.last_request("textDocument/rename")["params"]["newName"] == "y"
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_rename_unsupported_returns_none(self, ready_session):
        session, server = await ready_session()
        await session.open_document(URI, "x")

        task = asyncio.ensure_future(session.rename_symbol(URI, {"line": 0, "character": 0}, "y"))
        (result,) = await answer_with_error(
            server, "textDocument/rename", task, ErrorCodes.MethodNotFound
        )
        assert result is None

        task = asyncio.ensure_future(session.prepare_rename(URI, {"line": 0, "character": 0}))
        (result,) = await answer_with_error(
            server, "textDocument/prepareRename", task, ErrorCodes.MethodNotFound
        )
        assert result is None
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_rename_other_errors_propagate(self, ready_session):
        session, server = await ready_session()
        await session.open_document(URI, "x")
        task = asyncio.ensure_future(session.rename_symbol(URI, {"line": 0, "character": 0}, "1"))
        (error,) = await answer_with_error(
            server, "textDocument/rename", task, ErrorCodes.InvalidParams, "bad name"
        )
        assert isinstance(error, ProtocolError)
        assert error.to_dict() == {"code": ErrorCodes.InvalidParams, "message": "bad name"}
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_symbols(self, ready_session):
        symbol = {"name": "x", "kind": 13, "location": {"uri": URI, "range": RANGE}}
        session, server = await ready_session(
            {"textDocument/documentSymbol": [symbol], "workspace/symbol": [symbol]}
        )
        # workspace symbols need no open document
        assert await session.get_workspace_symbols("x") == [symbol]
        assert server.last_request("workspace/symbol")["params"] == {"query": "x"}

        await session.open_document(URI, "const x = 1;")
        assert await session.get_document_symbols(URI) == [symbol]
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_generic_request_and_notification(self, ready_session):
        session, server = await ready_session({"custom/ping": lambda params: {"pong": params}})
        assert await session.send_request("custom/ping", {"n": 1}) == {"pong": {"n": 1}}
        await session.send_notification("custom/note", Position(line=1, character=2))
        assert server.notifications("custom/note")[0]["params"] == {"line": 1, "character": 2}
        await session.shutdown()


@pytest.mark.unit
class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_publish_replaces_not_merges(self, ready_session):
        session, server = await ready_session()
        await session.open_document(URI, "x")
        assert session.get_diagnostics(URI) is None

        publish(server, URI, "first", "second")
        await wait_until(lambda: session.get_diagnostics(URI) is not None)
        publish(server, URI, "third")
        await wait_until(lambda: len(session.get_diagnostics(URI)) == 1)

        assert [d["message"] for d in session.get_diagnostics(URI)] == ["third"]
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_diagnostics_for_unopened_uri_are_not_cached(self, ready_session):
        session, server = await ready_session()
        publish(server, URI, "ignored")
        await settle()
        await session.open_document(URI, "x")
        assert session.get_diagnostics(URI) is None
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_wait_for_diagnostics(self, ready_session):
        session, server = await ready_session()
        await session.open_document(URI, "x")
        waiter = asyncio.ensure_future(session.wait_for_diagnostics(URI, timeout=1.0))
        await settle()
        publish(server, URI, "late error")
        diagnostics = await waiter
        assert diagnostics[0]["message"] == "late error"
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_wait_for_diagnostics_timeout(self, ready_session):
        session, server = await ready_session()
        await session.open_document(URI, "x")
        with pytest.raises(RequestTimeoutError):
            await session.wait_for_diagnostics(URI, timeout=0.05)
        assert session.is_ready
        await session.shutdown()


@pytest.mark.unit
class TestServerInitiated:
    @pytest.mark.asyncio
    async def test_default_request_handlers(self, ready_session):
        session, server = await ready_session()
        server.request("cfg", "workspace/configuration", {"items": [{"section": "a"}, {}]})
        server.request("reg", "client/registerCapability", {"registrations": []})
        server.request("progress", "window/workDoneProgress/create", {"token": "t"})
        server.request("edit", "workspace/applyEdit", {"edit": {}})
        server.request("other", "custom/unknown", {})
        await wait_until(lambda: len(server.responses()) == 5)

        responses = {r["id"]: r for r in server.responses()}
        assert responses["cfg"]["result"] == [None, None]
        assert responses["reg"]["result"] is None
        assert responses["progress"]["result"] is None
        assert responses["edit"]["result"]["applied"] is False
        assert responses["other"]["error"]["code"] == ErrorCodes.MethodNotFound
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_custom_handlers_and_listeners(self, ready_session):
        session, server = await ready_session()
        seen = []
        session.add_notification_listener(lambda method, params: seen.append(method))
        session.on_request("workspace/configuration", lambda params: [{"tabSize": 8}])
        session.on_notification("$/progress", lambda params: seen.append(params["token"]))

        server.notify("$/progress", {"token": "index"})
        server.request(1, "workspace/configuration", {"items": [{}]})
        await wait_until(lambda: len(server.responses()) == 1)

        assert seen == ["$/progress", "index"]
        assert server.responses()[0]["result"] == [{"tabSize": 8}]
        await session.shutdown()


@pytest.mark.unit
class TestConcurrency:
    @pytest.mark.asyncio
    async def test_request_ids_are_distinct(self, ready_session):
        session, server = await ready_session({"custom/echo": lambda params: params})
        results = await asyncio.gather(*(session.send_request("custom/echo", i) for i in range(20)))
        assert results == list(range(20))
        ids = [m["id"] for m in server.requests()]
        assert len(ids) == len(set(ids))
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self, ready_session):
        session, server = await ready_session()
        tasks = [asyncio.ensure_future(session.send_request("custom/slow", n)) for n in range(3)]
        await wait_until(lambda: len(server.requests("custom/slow")) == 3)

        for request in reversed(server.requests("custom/slow")):
            server.reply(request["id"], {"for": request["params"]})
        assert await asyncio.gather(*tasks) == [{"for": 0}, {"for": 1}, {"for": 2}]
        await session.shutdown()

    @pytest.mark.asyncio
    async def test_timeout_is_isolated(self, ready_session):
        session, server = await ready_session()
        with pytest.raises(RequestTimeoutError):
            await session.send_request("custom/slow", "first", timeout=0.05)
        timed_out_id = server.last_request("custom/slow")["id"]

        other = asyncio.ensure_future(session.send_request("custom/other"))
        await wait_until(lambda: len(server.requests("custom/other")) == 1)

        server.reply(timed_out_id, "late answer")
        await settle()
        assert not other.done()
        assert session.is_ready

        server.reply(server.last_request("custom/other")["id"], "right answer")
        assert await other == "right answer"
        await session.shutdown()


@pytest.mark.unit
class TestFailure:
    @pytest.mark.asyncio
    async def test_server_exit_fails_outstanding_calls(self, ready_session):
        session, server = await ready_session()
        await session.open_document(URI, "x")
        tasks = [
            asyncio.ensure_future(session.get_hover(URI, {"line": 0, "character": n}))
            for n in range(3)
        ]
        await wait_until(lambda: len(server.requests("textDocument/hover")) == 3)

        server.hang_up()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(result, ServerExitedError) for result in results)
        assert session.state is SessionState.TERMINATED

        writes = server.write_count
        with pytest.raises(SessionStateError) as excinfo:
            await session.get_hover(URI, {"line": 0, "character": 0})
        assert excinfo.value.state is SessionState.TERMINATED
        assert server.write_count == writes

    @pytest.mark.asyncio
    async def test_corrupt_stream_is_a_transport_failure(self, ready_session):
        session, server = await ready_session()
        task = asyncio.ensure_future(session.send_request("custom/slow"))
        await wait_until(lambda: len(server.requests("custom/slow")) == 1)

        server.reader.feed_data(b"Not-A-Header: 1\r\n\r\n{}")
        with pytest.raises(TransportError):
            await task
        assert session.state is SessionState.TERMINATED

    @pytest.mark.asyncio
    async def test_termination_callbacks_run_once(self, ready_session):
        session, server = await ready_session()
        terminated = []
        session.add_termination_callback(terminated.append)
        server.hang_up()
        await wait_until(lambda: session.state is SessionState.TERMINATED)
        await session.shutdown()
        assert terminated == [session]

    @pytest.mark.asyncio
    async def test_kill_fails_pending_calls(self, ready_session):
        session, server = await ready_session()
        task = asyncio.ensure_future(session.send_request("custom/slow"))
        await wait_until(lambda: len(server.requests("custom/slow")) == 1)
        session.kill()
        with pytest.raises(SessionStateError):
            await task
        assert server.closed


@pytest.mark.unit
class TestServerStderr:
    @pytest.mark.asyncio
    async def test_lines_longer_than_the_reader_limit_keep_draining(self):
        process = FakeProcess()
        process.stderr = asyncio.StreamReader(limit=1024)
        session = LspSession.from_process(process, PROJECT_ROOT, options=fast_options())
        messages = []
        sink_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
        try:
            await session.initialize()
            process.stderr.feed_data(b"x" * 5000 + b"\nsecond line\npartial")
            process.stderr.feed_eof()
            await wait_until(lambda: "server stderr: partial" in messages)
        finally:
            logger.remove(sink_id)

        stderr_lines = [m for m in messages if m.startswith("server stderr: ")]
        assert stderr_lines[0].endswith("... (5000 chars)")
        assert stderr_lines[1:] == ["server stderr: second line", "server stderr: partial"]
        assert session.is_ready
        await session.shutdown()
        assert process.server.requests("shutdown")


@pytest.mark.unit
class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_then_exit(self, ready_session):
        session, server = await ready_session()
        await session.shutdown()

        assert [m["method"] for m in server.messages[-2:]] == ["shutdown", "exit"]
        assert "id" in server.messages[-2]
        assert "id" not in server.messages[-1]
        assert session.state is SessionState.TERMINATED
        assert server.closed

    @pytest.mark.asyncio
    async def test_repeated_and_concurrent_shutdown(self, ready_session):
        session, server = await ready_session()
        await asyncio.gather(session.shutdown(), session.shutdown())
        await session.shutdown()
        assert len(server.requests("shutdown")) == 1
        assert len(server.notifications("exit")) == 1

    @pytest.mark.asyncio
    async def test_shutdown_fails_pending_calls(self, ready_session):
        session, server = await ready_session()
        task = asyncio.ensure_future(session.send_request("custom/slow"))
        await wait_until(lambda: len(server.requests("custom/slow")) == 1)

        await session.shutdown()
        with pytest.raises(SessionStateError):
            await task

    @pytest.mark.asyncio
    async def test_shutdown_tolerates_unanswered_shutdown(self, ready_session):
        session, server = await ready_session()
        del server.results["shutdown"]
        session.options.shutdown_timeout = 0.05
        await session.shutdown()
        assert session.state is SessionState.TERMINATED
        assert len(server.notifications("exit")) == 1

    @pytest.mark.asyncio
    async def test_shutdown_of_uninitialized_session(self, make_session):
        session, server = make_session()
        await session.shutdown()
        assert session.state is SessionState.TERMINATED
        assert server.messages == []
