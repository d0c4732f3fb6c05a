import random
import string

import pytest

from convoy.errors import ValidationError
from convoy.PARSERS.compose_parser import ComposeParser, parse_duration
from convoy.PARSERS.dockerfile_parser import DockerfileParser
from convoy.PARSERS.unit_validator import UnitValidator

SEED = 1234


def random_string(rng, length, alphabet=string.printable):
    return ''.join(rng.choice(alphabet) for _ in range(length))


def test_fuzz_dockerfile_parser():
    rng = random.Random(SEED)
    parser = DockerfileParser()
    for _ in range(200):
        content = random_string(rng, rng.randint(0, 1000))
        # never raises, whatever the input
        ast = parser.parse_from_string(content)
        for inst in ast.instructions:
            assert inst.instruction.isalpha() and inst.instruction.isupper()


def test_fuzz_compose_parser_only_raises_validation_errors(tmp_path):
    rng = random.Random(SEED)
    parser = ComposeParser(context={})
    for _ in range(200):
        content = random_string(rng, rng.randint(0, 1000))
        try:
            parser.parse_from_string(content, base_dir=str(tmp_path))
        except ValidationError:
            pass


def test_fuzz_service_definitions(tmp_path):
    """Structurally valid YAML with junk values is rejected cleanly."""
    rng = random.Random(SEED)
    parser = ComposeParser(context={})
    keys = ["image", "build", "ports", "expose", "volumes", "environment", "depends_on",
            "healthcheck", "command", "stop_grace_period", "env_file", "labels"]
    junk = ["", "x", "-1", "0", "99999", "a:b:c:d", "[1, {a: b}]", "{x: [1]}", "null", "true",
            "8080:80/xyz", "/abs:rel:rw", "1m30x", "${UNSET}", "'''"]
    for _ in range(300):
        lines = ["services:", "  svc:"]
        for key in rng.sample(keys, rng.randint(1, 4)):
            lines.append(f"    {key}: {rng.choice(junk)}")
        try:
            unit = parser.parse_from_string("\n".join(lines), base_dir=str(tmp_path))
            UnitValidator().validate(unit)
        except ValidationError:
            pass


@pytest.mark.parametrize("value", ["", "s", "10q", "1.2.3s", "ms", "-"])
def test_parse_duration_rejects_junk(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_edge_cases_parsers():
    dockerfile_parser = DockerfileParser()

    # Empty string
    assert dockerfile_parser.parse_from_string("").instructions == []

    # Only whitespace
    assert dockerfile_parser.parse_from_string("   \n\t  ").instructions == []

    # Very long line
    ast = dockerfile_parser.parse_from_string("RUN " + "a" * 10000)
    assert len(ast.instructions[0].arguments[0]) == 10000

    # Many line continuations
    ast = dockerfile_parser.parse_from_string("RUN echo \\\n" * 100 + "hello")
    assert len(ast.instructions) == 1
    assert ast.instructions[0].arguments[0].endswith("hello")

    # Unbalanced quotes and broken exec form
    ast = dockerfile_parser.parse_from_string('COPY "a b\nCMD ["python", ')
    assert [i.instruction for i in ast.instructions] == ["COPY", "CMD"]
    assert ast.instructions[1].exec_form is False
