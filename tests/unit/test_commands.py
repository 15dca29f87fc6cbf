"""
Unit tests for argv construction from named arguments.
"""

import pytest

from toolgate.errors import InvalidArgumentsError
from toolgate.execution.commands import build_command, select_flag, validate_arguments
from toolgate.policy.effects import resolve_command
from toolgate.schema import ToolDescriptor


@pytest.fixture
def greet(sample_descriptor: ToolDescriptor):
    return resolve_command(sample_descriptor, ["greet"])


class TestSelectFlag:
    """Tests for select_flag()."""

    def test_prefers_long(self) -> None:
        assert select_flag(["-n", "--times"]) == "--times"

    def test_falls_back_to_first(self) -> None:
        assert select_flag(["-q"]) == "-q"


class TestBuildCommand:
    """Tests for build_command()."""

    def test_no_arguments(self, greet) -> None:
        assert build_command(greet) == ["demo", "greet"]

    def test_positionals_then_options(self, greet) -> None:
        argv = build_command(greet, {"times": 2, "who": "world", "shout": True})
        assert argv == ["demo", "greet", "world", "--shout", "--times", "2"]

    def test_false_boolean_omitted(self, greet) -> None:
        assert build_command(greet, {"shout": False}) == ["demo", "greet"]

    def test_array_repeats_flag(self, greet) -> None:
        argv = build_command(greet, {"tag": ["a", "b"]})
        assert argv == ["demo", "greet", "--tag", "a", "--tag", "b"]

    def test_scalar_for_array_wraps(self, greet) -> None:
        assert build_command(greet, {"tag": "solo"}) == ["demo", "greet", "--tag", "solo"]

    def test_executable_as_argv0(self, greet) -> None:
        argv = build_command(greet, {"who": "x"}, executable="/opt/bin/demo")
        assert argv[0] == "/opt/bin/demo"
        assert argv[1:] == ["greet", "x"]

    def test_values_stay_single_elements(self, greet) -> None:
        """Shell metacharacters are carried verbatim as one element."""
        hostile = "world; rm -rf / && echo $(id) `uname` | cat > /tmp/x"
        argv = build_command(greet, {"who": hostile})
        assert argv == ["demo", "greet", hostile]

    def test_string_coercions(self, greet) -> None:
        argv = build_command(greet, {"shout": "yes", "times": "3"})
        assert argv == ["demo", "greet", "--shout", "--times", "3"]


class TestValidateArguments:
    """Tests for validate_arguments()."""

    def test_unknown_parameter(self, greet) -> None:
        with pytest.raises(InvalidArgumentsError) as exc_info:
            validate_arguments(greet, {"colour": "red"})
        assert "unknown parameter 'colour'" in exc_info.value.problems

    def test_missing_required(self, sample_descriptor: ToolDescriptor) -> None:
        resolved = resolve_command(sample_descriptor, ["repo", "delete"])
        with pytest.raises(InvalidArgumentsError) as exc_info:
            validate_arguments(resolved, {})
        assert exc_info.value.problems == ["missing required parameter 'repo'"]
        assert exc_info.value.command == ["demo", "repo", "delete"]

    def test_wrong_types_all_reported(self, greet) -> None:
        with pytest.raises(InvalidArgumentsError) as exc_info:
            validate_arguments(greet, {"shout": "loud", "times": "many"})
        assert len(exc_info.value.problems) == 2

    def test_null_rejected(self, greet) -> None:
        with pytest.raises(InvalidArgumentsError):
            validate_arguments(greet, {"who": None})

    @pytest.mark.parametrize("value", ["--yes", "-rf", "-"])
    def test_flag_like_positional_rejected(self, value: str, sample_descriptor: ToolDescriptor) -> None:
        resolved = resolve_command(sample_descriptor, ["repo", "delete"])
        with pytest.raises(InvalidArgumentsError) as exc_info:
            build_command(resolved, {"repo": value})
        assert "would read it as a flag" in exc_info.value.problems[0]

    def test_flag_like_option_value_allowed(self, greet) -> None:
        """Option values follow their flag, so a leading dash is harmless."""
        assert build_command(greet, {"tag": "-x"}) == ["demo", "greet", "--tag", "-x"]

    def test_enum(self) -> None:
        descriptor = ToolDescriptor.model_validate(
            {
                "atip": "0.6",
                "name": "t",
                "version": "1",
                "description": "t",
                "commands": {
                    "set": {
                        "description": "s",
                        "options": [{"name": "mode", "flags": ["--mode"], "enum": ["fast", "safe"]}],
                    }
                },
            }
        )
        resolved = resolve_command(descriptor, ["set"])
        assert validate_arguments(resolved, {"mode": "safe"}) == {"mode": "safe"}
        with pytest.raises(InvalidArgumentsError):
            validate_arguments(resolved, {"mode": "reckless"})
