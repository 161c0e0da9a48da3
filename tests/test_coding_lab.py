"""
Tests for the coding-lab pipeline: language mapping, test-case building,
Piston execution and persisting submissions.
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from coding_lab import (
    CodeExecutionError,
    PistonClient,
    TestCase,
    build_test_cases,
    execute_and_save,
    file_extension,
    map_language,
    normalize_coding_question,
    submission_status,
)


def _piston_response(stdout="", stderr="", signal=None, compile_stderr=None):
    response = MagicMock()
    data = {"run": {"stdout": stdout, "stderr": stderr, "code": 0 if not stderr else 1, "signal": signal}}
    if compile_stderr is not None:
        data["compile"] = {"stderr": compile_stderr}
    response.json.return_value = data
    response.raise_for_status = MagicMock()
    return response


@pytest.fixture
def client() -> PistonClient:
    return PistonClient(base_url="https://piston.test/api/v2/", compile_timeout=10000, run_timeout=3000, http_timeout=5)


def test_map_language_aliases_and_default() -> None:
    assert map_language("python3") == "python"
    assert map_language("JS") == "javascript"
    assert map_language("rust") == "rust"
    assert map_language("cobol") == "python"
    assert map_language("") == "python"


def test_file_extension() -> None:
    assert file_extension("python") == "py"
    assert file_extension("java") == "java"
    assert file_extension("js") == "js"
    assert file_extension("go") == "go"
    assert file_extension("rust") == "rs"
    assert file_extension("csharp") == "cs"
    assert file_extension("cobol") == "py"


def test_build_test_cases_sample_then_hidden() -> None:
    question = {
        "sample_input": "1 2",
        "sample_output": "3",
        "test_cases": [{"input": "5 5", "expected_output": "10"}, {"input": "x"}],
    }
    cases = build_test_cases(question)
    assert cases == [TestCase("1 2", "3"), TestCase("5 5", "10")]


def test_build_test_cases_skips_incomplete_sample() -> None:
    assert build_test_cases({"sample_input": "1", "sample_output": ""}) == []


def test_submission_status_mapping() -> None:
    assert submission_status("accepted") == "accepted"
    assert submission_status("runtime_error") == "error"
    assert submission_status("timeout") == "error"
    assert submission_status("error") == "error"
    assert submission_status("queued") == "pending"


def test_execute_all_cases_pass(client: PistonClient) -> None:
    cases = [TestCase("1 2", "3"), TestCase("2 2", "4\n")]
    responses = [_piston_response("3\n"), _piston_response("4")]
    with patch("coding_lab.requests.post", side_effect=responses) as mock_post:
        result = client.execute("print(sum(map(int, input().split())))", "python3", cases)

    assert result.status == "accepted"
    assert result.tests_passed == 2
    assert result.total_tests == 2
    assert result.output == "2/2 tests passed"
    assert result.error is None
    assert mock_post.call_count == 2

    url = mock_post.call_args_list[0].args[0]
    payload = mock_post.call_args_list[0].kwargs["json"]
    assert url == "https://piston.test/api/v2/piston/execute"
    assert payload["language"] == "python"
    assert payload["version"] == "*"
    assert payload["files"] == [{"name": "solution.py", "content": "print(sum(map(int, input().split())))"}]
    assert payload["stdin"] == "1 2"
    assert payload["compile_timeout"] == 10000
    assert payload["run_timeout"] == 3000


@pytest.mark.parametrize("language, filename", [("go", "solution.go"), ("rust", "solution.rs"), ("csharp", "solution.cs")])
def test_execute_names_file_for_language(client: PistonClient, language, filename) -> None:
    language = normalize_coding_question({"title": "t", "description": "d", "programming_language": language})["programming_language"]
    with patch("coding_lab.requests.post", return_value=_piston_response("1")) as mock_post:
        client.execute("code", language, [TestCase("", "1")])
    payload = mock_post.call_args.kwargs["json"]
    assert payload["language"] == language
    assert payload["files"][0]["name"] == filename


def test_execute_partial_pass_is_error(client: PistonClient) -> None:
    cases = [TestCase("a", "A"), TestCase("b", "B")]
    with patch("coding_lab.requests.post", side_effect=[_piston_response("A"), _piston_response("wrong")]):
        result = client.execute("code", "python", cases)
    assert result.status == "error"
    assert result.tests_passed == 1
    assert result.output == "1/2 tests passed"


def test_execute_runtime_error_keeps_stderr(client: PistonClient) -> None:
    with patch("coding_lab.requests.post", return_value=_piston_response("", "NameError: x")):
        result = client.execute("print(x)", "python", [TestCase("", "1")])
    assert result.status == "runtime_error"
    assert result.error == "NameError: x"


def test_execute_compile_error_is_runtime_error(client: PistonClient) -> None:
    with patch("coding_lab.requests.post", return_value=_piston_response(compile_stderr="error: ';' expected")):
        result = client.execute("class", "java", [TestCase("", "1")])
    assert result.status == "runtime_error"
    assert "expected" in result.error


def test_execute_killed_run_is_timeout(client: PistonClient) -> None:
    with patch("coding_lab.requests.post", return_value=_piston_response("", "", signal="SIGKILL")):
        result = client.execute("while True: pass", "python", [TestCase("", "1")])
    assert result.status == "timeout"


def test_execute_http_failure_counts_as_failed_case(client: PistonClient) -> None:
    cases = [TestCase("1", "1"), TestCase("2", "2")]
    with patch("coding_lab.requests.post", side_effect=[requests.ConnectionError("down"), _piston_response("2")]):
        result = client.execute("print(input())", "python", cases)
    assert result.tests_passed == 1
    assert result.total_tests == 2
    assert result.status == "error"


def test_execute_without_cases(client: PistonClient) -> None:
    with patch("coding_lab.requests.post") as mock_post:
        result = client.execute("print(1)", "python", [])
    assert result.status == "error"
    assert result.output == "0/0 tests passed"
    mock_post.assert_not_called()


def test_run_code_returns_output(client: PistonClient) -> None:
    with patch("coding_lab.requests.post", return_value=_piston_response("hi\n")):
        result = client.run_code("print('hi')", "python", "")
    assert result == {"success": True, "output": "hi\n", "error": ""}


def test_run_code_transport_failure_raises(client: PistonClient) -> None:
    with patch("coding_lab.requests.post", side_effect=requests.Timeout("slow")):
        with pytest.raises(CodeExecutionError, match="unavailable"):
            client.run_code("print(1)", "python")


def test_execute_and_save_persists_submission() -> None:
    store = MagicMock()
    store.get_question.return_value = {"id": "q1", "sample_input": "2", "sample_output": "4"}
    store.save_submission.side_effect = lambda record: dict(record, id="sub1")
    piston = PistonClient()

    with patch("coding_lab.requests.post", return_value=_piston_response("4")):
        submission = execute_and_save(store, piston, "q1", "stu1", "print(int(input())*2)", "python")

    assert submission["id"] == "sub1"
    saved = store.save_submission.call_args.args[0]
    assert saved["question_id"] == "q1"
    assert saved["student_id"] == "stu1"
    assert saved["status"] == "accepted"
    assert saved["tests_passed"] == 1
    assert saved["total_tests"] == 1
    assert saved["output"] == "1/1 tests passed"
    assert saved["error_message"] is None
    assert saved["submitted_at"]


def test_execute_and_save_missing_question() -> None:
    store = MagicMock()
    store.get_question.return_value = None
    with pytest.raises(CodeExecutionError, match="Question not found"):
        execute_and_save(store, PistonClient(), "missing", "stu1", "code", "python")
    store.save_submission.assert_not_called()


def test_normalize_coding_question_defaults() -> None:
    fields = normalize_coding_question({"title": " Sum ", "description": "Add numbers", "is_published": "on"})
    assert fields["title"] == "Sum"
    assert fields["difficulty"] == "medium"
    assert fields["programming_language"] == "python"
    assert fields["time_limit"] == 5
    assert fields["memory_limit"] == 256
    assert fields["is_published"] is True
    assert fields["test_cases"] == []


@pytest.mark.parametrize(
    "data, message",
    [
        ({"title": "", "description": "x"}, "required"),
        ({"title": "t", "description": "d", "difficulty": "insane"}, "Difficulty"),
        ({"title": "t", "description": "d", "programming_language": "cobol"}, "Unsupported"),
        ({"title": "t", "description": "d", "time_limit": "abc"}, "whole numbers"),
        ({"title": "t", "description": "d", "test_cases": [{"input": "1"}]}, "expected_output"),
    ],
)
def test_normalize_coding_question_rejects(data, message) -> None:
    with pytest.raises(ValueError, match=message):
        normalize_coding_question(data)
