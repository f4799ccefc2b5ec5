"""Unit tests for AssistantClient."""
import sys
sys.path.insert(0, 'backend')

import json
from datetime import datetime, timezone

import httpx
import pytest
from unittest.mock import Mock
from models.conversation import JobState
from services.assistant_client import AssistantClient
from services.errors import ConcurrentTurnError, ConfigurationError, TransportError
from services.transport import TransportPolicy


def make_client(handler):
    transport = TransportPolicy("OpenAI", transport=httpx.MockTransport(handler), sleep=Mock())
    return AssistantClient(
        api_key="sk-test",
        assistant_id="asst_123",
        transport=transport,
        base_url="https://api.test/v1",
    )


def message_payload(message_id, created_at, content, run_id=None, role="assistant", attachments=None):
    return {
        "id": message_id,
        "role": role,
        "created_at": created_at,
        "run_id": run_id,
        "content": content,
        "attachments": attachments or [],
    }


class TestAssistantClientInit:
    """Test suite for AssistantClient configuration."""

    def test_missing_api_key_raises(self):
        """Test a missing API key is a configuration error."""
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            AssistantClient(api_key=None, assistant_id="asst_123", transport=TransportPolicy("OpenAI"))

    def test_missing_assistant_id_raises(self):
        """Test a missing assistant id is a configuration error."""
        with pytest.raises(ConfigurationError, match="OPENAI_ASSISTANT_ID"):
            AssistantClient(api_key="sk-test", assistant_id="", transport=TransportPolicy("OpenAI"))

    def test_headers(self):
        """Test auth and beta headers are sent."""
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, json={"id": "thread_1"})

        make_client(handler).create_conversation()

        assert seen["authorization"] == "Bearer sk-test"
        assert seen["openai-beta"] == "assistants=v2"


class TestConversationCalls:
    """Test suite for thread and message calls."""

    def test_create_conversation(self):
        """Test thread creation returns the thread id."""
        def handler(request):
            assert request.method == "POST"
            assert request.url.path == "/v1/threads"
            return httpx.Response(200, json={"id": "thread_abc"})

        assert make_client(handler).create_conversation() == "thread_abc"

    def test_create_conversation_not_retried(self):
        """Test thread creation gets a single attempt."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        with pytest.raises(TransportError):
            make_client(handler).create_conversation()
        assert len(calls) == 1

    def test_append_message_with_attachments(self):
        """Test files are attached for the code interpreter."""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "msg_1"})

        make_client(handler).append_message("thread_1", "Analyze this", ["file-a", "file-b"])

        body = bodies[0]
        assert body["role"] == "user"
        assert body["content"] == "Analyze this"
        assert body["attachments"] == [
            {"file_id": "file-a", "tools": [{"type": "code_interpreter"}]},
            {"file_id": "file-b", "tools": [{"type": "code_interpreter"}]},
        ]

    def test_append_message_without_attachments(self):
        """Test no attachments key is sent without files."""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "msg_1"})

        make_client(handler).append_message("thread_1", "Hi", [])
        assert "attachments" not in bodies[0]

    def test_append_message_while_run_active_is_concurrent_turn(self):
        """Test the backend refusing a message during an active run maps to ConcurrentTurnError."""
        def handler(request):
            return httpx.Response(400, json={"error": {
                "message": "Can't add messages to thread_1 while a run run_0 is active.",
            }})

        with pytest.raises(ConcurrentTurnError) as exc_info:
            make_client(handler).append_message("thread_1", "Hi", [])
        assert exc_info.value.error.details == {"conversation_id": "thread_1"}

    def test_append_message_other_400_propagates(self):
        """Test other 400 errors on message creation stay transport errors."""
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Invalid file id"}})

        with pytest.raises(TransportError):
            make_client(handler).append_message("thread_1", "Hi", ["file-x"])

    def test_list_recent_messages_filters_and_orders(self):
        """Test messages before `since` are dropped and the rest are oldest first."""
        def handler(request):
            assert request.url.params["order"] == "desc"
            return httpx.Response(200, json={"data": [
                message_payload("msg_3", 1_700_000_300, [{"type": "text", "text": {"value": "third", "annotations": []}}]),
                message_payload("msg_2", 1_700_000_200, [{"type": "text", "text": {"value": "second", "annotations": []}}]),
                message_payload("msg_1", 1_700_000_100, [{"type": "text", "text": {"value": "first", "annotations": []}}]),
            ]})

        since = datetime.fromtimestamp(1_700_000_200, tz=timezone.utc)
        messages = make_client(handler).list_recent_messages("thread_1", since=since)

        assert [m.id for m in messages] == ["msg_2", "msg_3"]
        assert messages[0].text == "second"


class TestMessageParsing:
    """Test suite for resolving message content into tagged parts."""

    def test_text_with_file_path_annotation(self):
        """Test file_path annotations become FileAnnotations."""
        message = AssistantClient._parse_message(message_payload("msg_1", 1_700_000_000, [{
            "type": "text",
            "text": {
                "value": "Download [report](sandbox:/mnt/data/report.csv)",
                "annotations": [
                    {"type": "file_path", "text": "sandbox:/mnt/data/report.csv", "file_path": {"file_id": "file-xyz"}},
                    {"type": "file_citation", "text": "[1]", "file_citation": {"file_id": "file-cit"}},
                ],
            },
        }], run_id="run_1"))

        part = message.parts[0]
        assert part.kind == "text"
        assert len(part.annotations) == 1
        assert part.annotations[0].text == "sandbox:/mnt/data/report.csv"
        assert part.annotations[0].file_handle == "file-xyz"
        assert message.run_id == "run_1"
        assert message.created_at.tzinfo is not None

    def test_image_and_file_parts(self):
        """Test image_file and file parts become references."""
        message = AssistantClient._parse_message(message_payload("msg_1", 1_700_000_000, [
            {"type": "image_file", "image_file": {"file_id": "file-img"}},
            {"type": "file", "file": {"file_id": "file-doc"}},
            {"type": "refusal", "refusal": "no"},
        ]))

        assert [(p.kind, p.file_handle) for p in message.parts] == [
            ("image_ref", "file-img"),
            ("file_ref", "file-doc"),
        ]
        assert message.text == ""

    def test_attachments(self):
        """Test message attachments are collected."""
        message = AssistantClient._parse_message(message_payload(
            "msg_1", 1_700_000_000, [], attachments=[{"file_id": "file-att", "tools": []}, {"tools": []}]
        ))
        assert message.attachments == ["file-att"]

    def test_string_content(self):
        """Test plain string content is treated as one text part."""
        message = AssistantClient._parse_message(message_payload("msg_1", 1_700_000_000, "plain"))
        assert message.text == "plain"


class TestJobCalls:
    """Test suite for run calls."""

    def test_create_job_uses_assistant_id(self):
        """Test the configured assistant runs the job."""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "run_1", "status": "queued"})

        assert make_client(handler).create_job("thread_1") == "run_1"
        assert bodies[0]["assistant_id"] == "asst_123"

    def test_create_job_active_run_is_concurrent_turn(self):
        """Test the backend's active-run rejection maps to ConcurrentTurnError."""
        def handler(request):
            return httpx.Response(400, json={"error": {
                "message": "Thread thread_1 already has an active run run_0.",
            }})

        with pytest.raises(ConcurrentTurnError) as exc_info:
            make_client(handler).create_job("thread_1")
        assert exc_info.value.error.status_code == 409

    def test_create_job_other_400_propagates(self):
        """Test other 400 errors stay transport errors."""
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Invalid assistant"}})

        with pytest.raises(TransportError):
            make_client(handler).create_job("thread_1")

    def test_get_job_parses_state(self):
        """Test run status maps to JobState."""
        def handler(request):
            return httpx.Response(200, json={
                "id": "run_1",
                "thread_id": "thread_1",
                "status": "failed",
                "last_error": {"code": "server_error", "message": "Something broke"},
            })

        job = make_client(handler).get_job("thread_1", "run_1")
        assert job.state is JobState.FAILED
        assert job.last_error == "Something broke"

    def test_unknown_status_treated_as_in_progress(self):
        """Test unknown statuses keep polling."""
        def handler(request):
            return httpx.Response(200, json={"id": "run_1", "status": "thinking_hard"})

        job = make_client(handler).get_job("thread_1", "run_1")
        assert job.state is JobState.IN_PROGRESS

    def test_list_active_jobs(self):
        """Test only non-terminal runs are returned."""
        def handler(request):
            return httpx.Response(200, json={"data": [
                {"id": "run_3", "status": "in_progress"},
                {"id": "run_2", "status": "requires_action"},
                {"id": "run_1", "status": "completed"},
            ]})

        jobs = make_client(handler).list_active_jobs("thread_1")
        assert [j.id for j in jobs] == ["run_3", "run_2"]


class TestFileCalls:
    """Test suite for file calls."""

    def test_get_file_metadata(self):
        """Test file metadata is read."""
        def handler(request):
            return httpx.Response(200, json={"id": "file-1", "filename": "chart.png", "bytes": 2048, "purpose": "assistants_output"})

        metadata = make_client(handler).get_file_metadata("file-1")
        assert metadata.filename == "chart.png"
        assert metadata.size_bytes == 2048

    def test_get_file_metadata_without_filename(self):
        """Test a missing filename is left empty for callers to fill in."""
        def handler(request):
            return httpx.Response(200, json={"id": "file-1", "bytes": 10})

        assert make_client(handler).get_file_metadata("file-1").filename == ""

    def test_get_file_content(self):
        """Test file bytes are returned."""
        def handler(request):
            assert request.url.path == "/v1/files/file-1/content"
            return httpx.Response(200, content=b"a,b\n1,2\n")

        assert make_client(handler).get_file_content("file-1") == b"a,b\n1,2\n"
