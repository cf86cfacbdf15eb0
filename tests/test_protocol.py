"""Tests for envelope decoding and tool parameter validation."""

import json
import unittest

from pydantic import ValidationError

from filebridge.errors import InvalidRequestError, MalformedFrameError
from filebridge.protocol import (
    EditFileCall,
    ListFilesCall,
    RunCommandCall,
    ToolRequest,
    ToolResponse,
    decode_message,
    decode_response,
    encode_request,
    encode_response,
    parse_tool_call,
    read_request_id,
)


class EnvelopeTests(unittest.TestCase):
    """Ensure frames decode strictly and encode with stable shapes."""

    def test_invalid_json_is_malformed(self) -> None:
        with self.assertRaises(MalformedFrameError):
            decode_message("{not json")

    def test_non_object_is_malformed(self) -> None:
        with self.assertRaises(MalformedFrameError):
            decode_message("[1, 2, 3]")

    def test_unknown_type_is_malformed(self) -> None:
        with self.assertRaises(MalformedFrameError):
            decode_message(json.dumps({"type": "shutdown"}))

    def test_ping_without_payload(self) -> None:
        envelope = decode_message(b'{"type": "ping"}')
        self.assertEqual(envelope.type, "ping")
        self.assertIsNone(envelope.payload)

    def test_encode_request_shape(self) -> None:
        request = ToolRequest(id="abc", tool="read_file", parameters={"path": "/tmp/a"})
        body = json.loads(encode_request(request))
        self.assertEqual(
            body,
            {
                "type": "tool_request",
                "payload": {"id": "abc", "tool": "read_file", "parameters": {"path": "/tmp/a"}},
            },
        )

    def test_encode_response_omits_absent_fields(self) -> None:
        body = json.loads(encode_response(ToolResponse.ok("abc", {"size": 1})))
        self.assertEqual(body["payload"], {"id": "abc", "success": True, "data": {"size": 1}})

        failure = json.loads(
            encode_response(ToolResponse.failure("abc", "Access denied: /x", error_code="ACCESS_DENIED"))
        )
        self.assertNotIn("data", failure["payload"])
        self.assertEqual(failure["payload"]["error_code"], "ACCESS_DENIED")

    def test_decode_response(self) -> None:
        envelope = decode_message(
            json.dumps({"type": "tool_response", "payload": {"id": "abc", "success": False, "error": "boom"}})
        )
        response = decode_response(envelope)
        self.assertEqual(response.id, "abc")
        self.assertFalse(response.success)
        self.assertEqual(response.error, "boom")

    def test_decode_response_without_id_is_malformed(self) -> None:
        envelope = decode_message(json.dumps({"type": "tool_response", "payload": {"success": True}}))
        with self.assertRaises(MalformedFrameError):
            decode_response(envelope)

    def test_read_request_id(self) -> None:
        self.assertEqual(read_request_id({"id": "abc"}), "abc")
        self.assertIsNone(read_request_id({"id": ""}))
        self.assertIsNone(read_request_id({"id": 7}))
        self.assertIsNone(read_request_id(None))

    def test_tool_request_is_immutable(self) -> None:
        request = ToolRequest(id="abc", tool="read_file")
        with self.assertRaises(ValidationError):
            request.id = "other"


class ToolCallParsingTests(unittest.TestCase):
    """Ensure per-tool parameters validate into typed records."""

    def test_unknown_tool(self) -> None:
        with self.assertRaises(InvalidRequestError) as cm:
            parse_tool_call(ToolRequest(id="1", tool="format_disk"))
        self.assertEqual(str(cm.exception), "Unknown tool: format_disk")

    def test_edit_defaults_to_single_replacement(self) -> None:
        call = parse_tool_call(
            ToolRequest(
                id="1",
                tool="edit_file",
                parameters={"path": "/a", "old_string": "x", "new_string": "y"},
            )
        )
        self.assertIsInstance(call, EditFileCall)
        self.assertFalse(call.parameters.replace_all)

    def test_edit_rejects_empty_old_string(self) -> None:
        with self.assertRaises(InvalidRequestError):
            parse_tool_call(
                ToolRequest(
                    id="1",
                    tool="edit_file",
                    parameters={"path": "/a", "old_string": "", "new_string": "y"},
                )
            )

    def test_list_files_cwd_alias_and_default_pattern(self) -> None:
        call = parse_tool_call(ToolRequest(id="1", tool="list_files", parameters={"cwd": "/proj"}))
        self.assertIsInstance(call, ListFilesCall)
        self.assertEqual(call.parameters.directory, "/proj")
        self.assertEqual(call.parameters.pattern, "*")

    def test_list_files_rejects_absolute_pattern(self) -> None:
        with self.assertRaises(InvalidRequestError):
            parse_tool_call(
                ToolRequest(id="1", tool="list_files", parameters={"pattern": "/etc/*"})
            )

    def test_run_command_timeout_in_milliseconds(self) -> None:
        call = parse_tool_call(
            ToolRequest(id="1", tool="run_command", parameters={"command": "ls", "timeout": 1500})
        )
        self.assertIsInstance(call, RunCommandCall)
        self.assertEqual(call.parameters.timeout, 1500)
        self.assertIsNone(call.parameters.cwd)

    def test_wrong_parameter_type(self) -> None:
        with self.assertRaises(InvalidRequestError) as cm:
            parse_tool_call(
                ToolRequest(id="1", tool="write_file", parameters={"path": "/a", "content": ["x"]})
            )
        self.assertIn("content", str(cm.exception))


if __name__ == "__main__":
    unittest.main()
