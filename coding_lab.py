"""Coding-lab submission pipeline.

Student code is run against the question's sample and hidden test cases by the
public Piston execution API, and the outcome is persisted as a coding
submission. Each test case is one sequential HTTP call; nothing is retried.
"""
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import List, Optional

import requests

logger = logging.getLogger(__name__)

LANGUAGE_MAP = {
    "python": "python",
    "python3": "python",
    "javascript": "javascript",
    "js": "javascript",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "csharp": "csharp",
    "go": "go",
    "rust": "rust",
}

FILE_EXTENSIONS = {
    "python": "py",
    "javascript": "js",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "csharp": "cs",
    "go": "go",
    "rust": "rs",
}

CODE_TEMPLATES = {
    "python": '# Write your Python code here\nprint("Hello, World!")\n',
    "javascript": '// Write your JavaScript code here\nconsole.log("Hello, World!");\n',
    "java": (
        "public class Solution {\n"
        "    public static void main(String[] args) {\n"
        '        System.out.println("Hello, World!");\n'
        "    }\n"
        "}\n"
    ),
    "cpp": (
        "#include <iostream>\n"
        "using namespace std;\n\n"
        "int main() {\n"
        '    cout << "Hello, World!" << endl;\n'
        "    return 0;\n"
        "}\n"
    ),
}

EDITOR_LANGUAGES = ("python", "javascript", "java", "cpp")
DIFFICULTIES = ("easy", "medium", "hard")


class CodeExecutionError(Exception):
    """Raised when a submission cannot be executed at all."""


@dataclass
class TestCase:
    input: str
    expected_output: str

    __test__ = False  # not a pytest test class


@dataclass
class ExecutionResult:
    status: str  # accepted | error | runtime_error | timeout
    output: str
    error: Optional[str]
    execution_time: int
    memory_used: int
    tests_passed: int
    total_tests: int

    def to_dict(self):
        return asdict(self)


def map_language(lang: str) -> str:
    return LANGUAGE_MAP.get((lang or "").lower(), "python")


def file_extension(lang: str) -> str:
    return FILE_EXTENSIONS.get(map_language(lang), "py")


def build_test_cases(question: dict) -> List[TestCase]:
    """Sample case first (when fully specified), then the hidden cases."""
    cases = []
    sample_in = question.get("sample_input") or ""
    sample_out = question.get("sample_output") or ""
    if sample_in and sample_out:
        cases.append(TestCase(sample_in, sample_out))
    for tc in question.get("test_cases") or []:
        expected = tc.get("expected_output", tc.get("expectedOutput"))
        if expected is None:
            continue
        cases.append(TestCase(tc.get("input", ""), expected))
    return cases


def normalize_coding_question(data: dict) -> dict:
    """Clean a faculty's coding problem form. Raises ValueError on bad input."""
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    if not title or not description:
        raise ValueError("Title and description are required")

    difficulty = (data.get("difficulty") or "medium").strip().lower()
    if difficulty not in DIFFICULTIES:
        raise ValueError(f"Difficulty must be one of {', '.join(DIFFICULTIES)}")
    language = (data.get("programming_language") or "python").strip().lower()
    if language not in LANGUAGE_MAP:
        raise ValueError(f"Unsupported language: {language}")

    try:
        time_limit = int(data.get("time_limit") or 5)
        memory_limit = int(data.get("memory_limit") or 256)
    except (TypeError, ValueError):
        raise ValueError("Time and memory limits must be whole numbers")
    if time_limit <= 0 or memory_limit <= 0:
        raise ValueError("Time and memory limits must be positive")

    test_cases = data.get("test_cases") or []
    if not isinstance(test_cases, list):
        raise ValueError("test_cases must be a list")
    cleaned_cases = []
    for tc in test_cases:
        if not isinstance(tc, dict) or "expected_output" not in tc:
            raise ValueError("Each test case needs input and expected_output")
        cleaned_cases.append({"input": str(tc.get("input", "")), "expected_output": str(tc["expected_output"])})

    published = data.get("is_published")
    if isinstance(published, str):
        published = published.lower() in ("1", "true", "on", "yes")

    return {
        "title": title,
        "description": description,
        "difficulty": difficulty,
        "programming_language": language,
        "sample_input": data.get("sample_input") or "",
        "sample_output": data.get("sample_output") or "",
        "time_limit": time_limit,
        "memory_limit": memory_limit,
        "is_published": bool(published),
        "test_cases": cleaned_cases,
    }


def submission_status(result_status: str) -> str:
    if result_status == "accepted":
        return "accepted"
    if result_status in ("error", "runtime_error", "timeout"):
        return "error"
    return "pending"


class PistonClient:
    def __init__(self, base_url="https://emkc.org/api/v2", compile_timeout=10000, run_timeout=3000, http_timeout=30):
        self.base_url = base_url.rstrip("/")
        self.compile_timeout = compile_timeout
        self.run_timeout = run_timeout
        self.http_timeout = http_timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            base_url=config.PISTON_URL,
            compile_timeout=config.PISTON_COMPILE_TIMEOUT_MS,
            run_timeout=config.PISTON_RUN_TIMEOUT_MS,
            http_timeout=config.PISTON_HTTP_TIMEOUT,
        )

    def _post(self, code: str, language: str, stdin: str) -> dict:
        payload = {
            "language": map_language(language),
            "version": "*",
            "files": [{"name": f"solution.{file_extension(language)}", "content": code}],
            "stdin": stdin,
            "compile_timeout": self.compile_timeout,
            "run_timeout": self.run_timeout,
        }
        response = requests.post(f"{self.base_url}/piston/execute", json=payload, timeout=self.http_timeout)
        response.raise_for_status()
        return response.json()

    def run_code(self, code: str, language: str, stdin: str = "") -> dict:
        """Free run for the editor's Run button. Raises CodeExecutionError on transport failure."""
        try:
            data = self._post(code, language, stdin)
        except requests.RequestException as e:
            logger.error(f"Piston run failed: {e}")
            raise CodeExecutionError(f"Code execution service unavailable: {e}") from e
        compile_stage = data.get("compile") or {}
        run = data.get("run") or {}
        stderr = compile_stage.get("stderr") or run.get("stderr") or ""
        return {
            "success": not stderr and run.get("code", 0) == 0,
            "output": run.get("stdout") or "",
            "error": stderr,
        }

    def execute(self, code: str, language: str, test_cases: List[TestCase]) -> ExecutionResult:
        passed = 0
        first_error = None
        saw_stderr = False
        saw_timeout = False
        started = time.monotonic()

        for case in test_cases:
            try:
                data = self._post(code, language, case.input)
            except requests.RequestException as e:
                logger.error(f"Test execution failed: {e}")
                continue

            compile_stage = data.get("compile") or {}
            run = data.get("run") or {}
            stdout = (run.get("stdout") or "").strip()
            stderr = compile_stage.get("stderr") or run.get("stderr") or ""

            if stdout == case.expected_output.strip():
                passed += 1
                continue
            if run.get("signal") == "SIGKILL":
                saw_timeout = True
            if stderr:
                saw_stderr = True
                if first_error is None:
                    first_error = stderr.strip()[:1000]

        total = len(test_cases)
        if total and passed == total:
            status = "accepted"
        elif saw_timeout:
            status = "timeout"
        elif saw_stderr:
            status = "runtime_error"
        else:
            status = "error"

        return ExecutionResult(
            status=status,
            output=f"{passed}/{total} tests passed",
            error=first_error,
            execution_time=int((time.monotonic() - started) * 1000),
            memory_used=0,
            tests_passed=passed,
            total_tests=total,
        )


def execute_and_save(store, client: PistonClient, question_id: str, student_id: str, code: str, language: str) -> dict:
    """Run a student's code against a question and persist the submission."""
    question = store.get_question(question_id)
    if not question:
        raise CodeExecutionError("Question not found")

    logger.info(f"Executing submission for question {question_id} ({language})")
    result = client.execute(code, language, build_test_cases(question))

    submission = store.save_submission({
        "question_id": question_id,
        "student_id": student_id,
        "code": code,
        "language": language,
        "status": submission_status(result.status),
        "output": result.output,
        "error_message": result.error,
        "execution_time": result.execution_time,
        "memory_used": result.memory_used,
        "tests_passed": result.tests_passed,
        "total_tests": result.total_tests,
        "submitted_at": datetime.now(timezone.utc).isoformat(),
    })
    logger.info(
        "Coding submission saved",
        extra={"submission_id": submission["id"], "student_id": student_id, "status": submission["status"]},
    )
    return submission
