"""
Tests for assessor implementations
"""

import pytest
import requests
from unittest.mock import Mock

from phasegate.assessors import (
    AssessmentRequest,
    HumanAssessor,
    LLMAssessor,
    LLMClient,
    StaticAssessor,
    get_assessor,
    list_assessors,
    parse_score_response,
)
from phasegate.error_handling import (
    AssessorTimeoutError,
    AssessorUnavailableError,
    MalformedResponseError,
)
from phasegate.models import AssessorSource
from phasegate.store import SQLiteStore


@pytest.fixture
def request_c1():
    return AssessmentRequest(
        work_item_id="wi_1",
        payload={"title": "Solar kiosk", "summary": "Phone charging in markets"},
        phase=1,
        phase_name="Screen",
        criterion_id="c1",
        criterion_prompt="Is there a clear customer?",
        timeout_seconds=12.0,
    )


def _response(status_code=200, body=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


def _chat(content):
    return {"choices": [{"message": {"content": content}}]}


class TestParseScoreResponse:

    def test_plain_json(self):
        result = parse_score_response('{"score": 82, "rationale": "Strong demand"}')
        assert result.score == 82.0
        assert result.rationale == "Strong demand"

    def test_json_inside_prose_and_fences(self):
        content = 'Here you go:\n```json\n{"score": 61.5, "answer": "Mixed"}\n```'
        result = parse_score_response(content)
        assert result.score == 61.5
        assert result.rationale == "Mixed"

    @pytest.mark.parametrize("content", [
        "no json here",
        '{"rationale": "missing score"}',
        '{"score": "high"}',
        '{"score": true}',
        '{"score": 80,,}',
        "",
    ])
    def test_malformed(self, content):
        with pytest.raises(MalformedResponseError):
            parse_score_response(content)


class TestLLMClient:

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("PHASEGATE_TEST_KEY", raising=False)
        client = LLMClient(api_key_env_var="PHASEGATE_TEST_KEY", session=Mock())

        assert not client.is_available()
        with pytest.raises(AssessorUnavailableError, match="PHASEGATE_TEST_KEY"):
            client.complete("sys", "user", timeout=5)

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("PHASEGATE_TEST_KEY", "secret")
        assert LLMClient(api_key_env_var="PHASEGATE_TEST_KEY", session=Mock()).is_available()

    def test_posts_chat_completion(self):
        session = Mock()
        session.post.return_value = _response(body=_chat("hello"))
        client = LLMClient(api_key="k", model="test/model", session=session)

        assert client.complete("sys", "user", timeout=7, json_mode=True) == "hello"

        _, kwargs = session.post.call_args
        assert kwargs["timeout"] == 7
        assert kwargs["json"]["model"] == "test/model"
        assert kwargs["json"]["response_format"] == {"type": "json_object"}
        assert kwargs["headers"]["Authorization"] == "Bearer k"

    def test_timeout(self):
        session = Mock()
        session.post.side_effect = requests.exceptions.Timeout()
        client = LLMClient(api_key="k", session=session)

        with pytest.raises(AssessorTimeoutError):
            client.complete("sys", "user", timeout=1)

    def test_connection_error(self):
        session = Mock()
        session.post.side_effect = requests.exceptions.ConnectionError()
        client = LLMClient(api_key="k", session=session)

        with pytest.raises(AssessorUnavailableError):
            client.complete("sys", "user", timeout=1)

    def test_error_status(self):
        session = Mock()
        session.post.return_value = _response(503, body={"error": {"message": "overloaded"}})
        client = LLMClient(api_key="k", session=session)

        with pytest.raises(AssessorUnavailableError, match="overloaded"):
            client.complete("sys", "user", timeout=1)

    def test_error_status_without_json(self):
        session = Mock()
        session.post.return_value = _response(502, body=ValueError("no json"), text="Bad gateway")
        client = LLMClient(api_key="k", session=session)

        with pytest.raises(AssessorUnavailableError, match="Bad gateway"):
            client.complete("sys", "user", timeout=1)

    def test_body_without_choices(self):
        session = Mock()
        session.post.return_value = _response(body={"unexpected": True})
        client = LLMClient(api_key="k", session=session)

        with pytest.raises(MalformedResponseError):
            client.complete("sys", "user", timeout=1)


class TestLLMAssessor:

    def test_assess(self, request_c1):
        client = Mock(spec=LLMClient)
        client.model = "test/model"
        client.complete.return_value = '{"score": 77, "rationale": "Clear buyer"}'
        assessor = LLMAssessor(client=client)

        response = assessor.assess(request_c1)

        assert response.score == 77
        assert response.metadata["model"] == "test/model"
        _, user_prompt = client.complete.call_args[0]
        assert "Is there a clear customer?" in user_prompt
        assert "Solar kiosk" in user_prompt
        assert client.complete.call_args[1]["timeout"] == 12.0

    def test_source_is_automated(self):
        assert LLMAssessor(client=Mock(spec=LLMClient)).source == AssessorSource.AUTOMATED


class TestHumanAssessor:

    def test_serves_recorded_score(self, request_c1):
        assessor = HumanAssessor()
        assessor.record("wi_1", 1, "c1", 88, rationale="Met the buyer", reviewer="bob")

        response = assessor.assess(request_c1)

        assert response.score == 88
        assert response.metadata["reviewer"] == "bob"
        assert assessor.source == AssessorSource.HUMAN

    def test_unscored_criterion_is_unavailable(self, request_c1):
        with pytest.raises(AssessorUnavailableError):
            HumanAssessor().assess(request_c1)

    def test_pending(self):
        assessor = HumanAssessor()
        assessor.record("wi_1", 1, "c1", 70)
        assert assessor.pending("wi_1", 1, ["c1", "c2"]) == ["c2"]

    def test_reads_scores_written_by_another_process(self, request_c1, tmp_path):
        writer = SQLiteStore(tmp_path / "reviews.db")
        reader = SQLiteStore(tmp_path / "reviews.db")
        try:
            HumanAssessor(writer).record("wi_1", 1, "c1", 61, reviewer="carol")

            assert HumanAssessor(reader).assess(request_c1).score == 61
        finally:
            writer.close()
            reader.close()


class TestStaticAssessor:

    def test_per_criterion_and_default(self, request_c1):
        assessor = StaticAssessor(default_score=50, scores={"c1": 90})
        assert assessor.assess(request_c1).score == 90

        other = StaticAssessor(default_score=50)
        assert other.assess(request_c1).score == 50


class TestAssessorRegistry:

    def test_list(self):
        assert set(list_assessors()) == {"llm", "human", "static"}

    def test_get(self):
        assessor = get_assessor("static", default_score=12)
        assert isinstance(assessor, StaticAssessor)
        assert assessor.default_score == 12

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown assessor"):
            get_assessor("oracle")
