import pytest

from collabexec.core.errors import UnsupportedLanguage, ValidationError
from collabexec.settings import DEFAULT_LANGUAGES
from collabexec.validation.validator import CodeValidator


@pytest.fixture
def validator():
    return CodeValidator(DEFAULT_LANGUAGES)


def reason_of(validator, code, language="python", input=""):
    with pytest.raises(ValidationError) as exc:
        validator.validate(code, language, input)
    return exc.value


def test_unknown_language_lists_supported(validator):
    err = reason_of(validator, "print(1)", language="cobol")
    assert isinstance(err, UnsupportedLanguage)
    assert err.reason == "unsupported_language"
    assert "python" in err.message and "java" in err.message


@pytest.mark.parametrize("code", ["", "   \n\t  "])
def test_empty_code(validator, code):
    assert reason_of(validator, code).reason == "empty_code"


def test_size_limits(validator):
    assert reason_of(validator, "x = 1\n" * 10_000).reason == "code_too_long"
    assert reason_of(validator, "print(input())", input="a" * 1001).reason == "input_too_long"
    # exactly at the limit is fine
    validator.validate("print(input())", "python", "a" * 1000)


def test_control_characters(validator):
    assert reason_of(validator, "print(1)\x00").reason == "invalid_characters"
    assert reason_of(validator, "print(input())", input="ok\x07").reason == "invalid_characters"
    validator.validate("for i in range(3):\r\n\tprint(i)\n", "python")


@pytest.mark.parametrize(
    "language,code,category",
    [
        ("python", "with open('x.txt') as f:\n    pass", "filesystem_access"),
        ("python", "import os\nprint(os.getcwd())", "filesystem_access"),
        ("python", "import subprocess", "process_control"),
        ("python", "from socket import socket", "network_access"),
        ("python", "eval('1+1')", "dynamic_eval"),
        ("python", "__import__('os')", "dynamic_eval"),
        ("python", "().__class__.__bases__[0].__subclasses__()", "sandbox_escape"),
        ("python", "exit(0)", "interpreter_control"),
        ("javascript", "const fs = require('fs');", "module_access"),
        ("javascript", "require('child_process').execSync('id')", "process_control"),
        ("javascript", "process.exit(1)", "process_control"),
        ("javascript", "fetch('http://example.com')", "network_access"),
        ("javascript", "new Function('return 1')()", "dynamic_eval"),
        ("cpp", "#include <fstream>\nint main(){}", "filesystem_access"),
        ("cpp", "int main(){ system(\"ls\"); }", "process_control"),
        ("cpp", "#include <sys/socket.h>\nint main(){}", "network_access"),
        ("java", "class Main { void f() { Runtime.getRuntime(); } }", "process_control"),
        ("java", "import java.net.URL;", "network_access"),
        ("java", "new FileReader(\"x\")", "filesystem_access"),
    ],
)
def test_forbidden_constructs(validator, language, code, category):
    err = reason_of(validator, code, language)
    assert err.reason == f"forbidden_{category}"
    assert err.category == category
    assert err.to_dict()["category"] == category


def test_forbidden_message_names_the_line(validator):
    err = reason_of(validator, "print(1)\nprint(2)\nimport subprocess\n")
    assert "line 3" in err.message


@pytest.mark.parametrize(
    "code",
    [
        "import re\nprint(re.compile('a+').match('aa'))",
        "import sys\nsys.exit(0)",
        "door = {'open': True}\nprint(door['open'])",
        "import math\nprint(math.sqrt(16))",
        "name = input()\nprint(f'hello {name}')",
    ],
)
def test_ordinary_python_passes(validator, code):
    report = validator.validate(code, "python")
    assert report.language == "python"


def test_first_failing_check_wins(validator):
    # too long is reported before any pattern match
    code = "import subprocess\n" + "x = 1\n" * 10_000
    assert reason_of(validator, code).reason == "code_too_long"


def test_verdict_is_deterministic(validator):
    code = "def f(n):\n    for i in range(n):\n        print(i)\nf(3)\n"
    assert validator.validate(code, "python") == validator.validate(code, "python")


def test_complexity_score(validator):
    code = "def f(n):\n    for i in range(n):\n        while False:\n            pass\n    return n\n"
    report = validator.validate(code, "python")
    assert report.loop_count == 2
    assert report.function_count == 1
    assert report.line_count == 5
    assert report.complexity == round(3 * 2 + 2 * 1 + 5 / 25, 2)


def test_complexity_javascript(validator):
    code = "const sq = (x) => x * x;\nfor (let i = 0; i < 3; i++) { console.log(sq(i)); }\n"
    report = validator.validate(code, "javascript")
    assert report.loop_count == 1
    assert report.function_count == 1
