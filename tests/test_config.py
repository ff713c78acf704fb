import tomllib
from pathlib import Path

import pytest

from shadow_critic import __version__
from shadow_critic.config import (
    DEFAULT_CRITIC_PROMPT,
    ConfigError,
    CriticConfig,
    ReviewConfiguration,
    dumps_toml,
    load_config,
    parse_max_reviews,
    parse_timeout_seconds,
    parse_trigger_mode,
    save_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "critic.toml"
    config = CriticConfig.default()
    config.review.enabled = True
    config.review.model = "anthropic claude-sonnet-4"
    config.review.trigger_mode = "tool_result"
    config.review.trigger_tools = ["edit", "write"]
    config.review.timeout_seconds = 45.0
    config.review.max_reviews_per_prompt = 2
    config.review.context_mode = "full"
    config.review.system_prompt = 'Say "hi"\nthen review.'
    config.process.agent_command = ["pi", "--offline"]
    config.process.kill_grace_seconds = 1.5

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.review.enabled is True
    assert loaded.review.model == "anthropic claude-sonnet-4"
    assert loaded.review.trigger_mode == "tool_result"
    assert loaded.review.trigger_tools == ["edit", "write"]
    assert loaded.review.timeout_seconds == 45.0
    assert loaded.review.max_reviews_per_prompt == 2
    assert loaded.review.context_mode == "full"
    assert loaded.review.system_prompt == 'Say "hi"\nthen review.'
    assert loaded.process.agent_command == ["pi", "--offline"]
    assert loaded.process.kill_grace_seconds == 1.5


def test_defaults_match_documented_values() -> None:
    review = ReviewConfiguration()

    assert review.enabled is False
    assert review.model is None
    assert review.system_prompt == DEFAULT_CRITIC_PROMPT
    assert review.trigger_mode == "turn_end"
    assert review.trigger_tools == ["write", "edit", "bash"]
    assert review.timeout_seconds == 60.0
    assert review.max_reviews_per_prompt == 3
    assert review.context_mode == "messages"
    assert "<critic_verdict>" in DEFAULT_CRITIC_PROMPT


def test_toml_dump_omits_unset_model_and_loads_back() -> None:
    rendered = dumps_toml(CriticConfig.default())
    data = tomllib.loads(rendered)

    assert "[review]" in rendered
    assert "[process]" in rendered
    assert "model" not in data["review"]
    assert data["review"]["timeout_seconds"] == 60.0
    assert data["process"]["agent_command"] == ["pi"]


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.review.trigger_mode == "turn_end"


def test_invalid_config_raises_config_error(tmp_path: Path) -> None:
    broken = tmp_path / "broken.toml"
    broken.write_text("[review\nenabled = ", encoding="utf-8")
    unknown = tmp_path / "unknown.toml"
    unknown.write_text("[review]\nflavour = 'spicy'\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(broken)
    with pytest.raises(ConfigError):
        load_config(unknown)


def test_snapshot_roundtrip_uses_session_wire_format() -> None:
    config = ReviewConfiguration(enabled=True, model="openai gpt-5", timeout_seconds=30.0)
    snapshot = config.snapshot()

    restored = ReviewConfiguration()
    restored.apply_snapshot(snapshot)

    assert snapshot["timeoutMs"] == 30000
    assert snapshot["triggerMode"] == "turn_end"
    assert restored.enabled is True
    assert restored.model == "openai gpt-5"
    assert restored.timeout_seconds == 30.0


def test_apply_snapshot_skips_malformed_fields() -> None:
    config = ReviewConfiguration()

    config.apply_snapshot(
        {"enabled": "yes", "triggerMode": "sometimes", "timeoutMs": "soon", "contextMode": 3}
    )

    assert config.enabled is False
    assert config.trigger_mode == "turn_end"
    assert config.timeout_seconds == 60.0
    assert config.context_mode == "messages"


def test_apply_flags_reports_invalid_values() -> None:
    config = ReviewConfiguration()

    warnings = config.apply_flags(
        {
            "critic": True,
            "critic-debug": True,
            "critic-trigger": "whenever",
            "critic-model": "  local qwen  ",
            "critic-max-reviews": "0",
        }
    )

    assert config.enabled is True
    assert config.debug is True
    assert config.trigger_mode == "turn_end"
    assert config.model == "local qwen"
    assert config.max_reviews_per_prompt == 3
    assert len(warnings) == 2


@pytest.mark.parametrize("value", ["4", "301", "abc", "12.5"])
def test_parse_timeout_rejects_out_of_range(value: str) -> None:
    with pytest.raises(ConfigError):
        parse_timeout_seconds(value)


def test_parsers_accept_valid_values() -> None:
    assert parse_timeout_seconds(" 5 ") == 5
    assert parse_timeout_seconds("300") == 300
    assert parse_max_reviews("7") == 7
    assert parse_trigger_mode("VISUAL") == "visual"
    with pytest.raises(ConfigError):
        parse_max_reviews(True)


def test_package_version_constant_matches_pyproject() -> None:
    pyproject_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
    pyproject = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))

    assert pyproject["project"]["version"] == __version__


@pytest.mark.parametrize(
    "toml_text",
    [
        "[review]\nenabled = 'yes'\n",
        "[review]\ndebug = 1\n",
        "[review]\nmodel = 42\n",
        "[review]\nsystem_prompt = '   '\n",
        "[review]\ntrigger_mode = 'sometimes'\n",
        "[review]\ntrigger_tools = 'edit'\n",
        "[review]\ntimeout_seconds = 9999\n",
        "[review]\ntimeout_seconds = 2\n",
        "[review]\ntimeout_seconds = 'soon'\n",
        "[review]\nmax_reviews_per_prompt = 0\n",
        "[review]\ncontext_mode = 'everything'\n",
        "[review]\nmax_context_messages = -1\n",
        "[process]\nagent_command = []\n",
        "[process]\nagent_command = 'pi'\n",
        "[process]\nkill_grace_seconds = -1\n",
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, toml_text: str) -> None:
    config_path = tmp_path / "critic.toml"
    config_path.write_text(toml_text, encoding="utf-8")

    with pytest.raises(ConfigError, match="critic.toml"):
        load_config(config_path)


def test_load_config_normalises_valid_values(tmp_path: Path) -> None:
    config_path = tmp_path / "critic.toml"
    config_path.write_text(
        "[review]\ntrigger_mode = 'Visual'\ntimeout_seconds = 90\n"
        "[process]\nkill_grace_seconds = 2\n",
        encoding="utf-8",
    )

    loaded = load_config(config_path)

    assert loaded.review.trigger_mode == "visual"
    assert loaded.review.timeout_seconds == 90.0
    assert loaded.process.kill_grace_seconds == 2.0


def test_apply_snapshot_ignores_timeout_outside_range() -> None:
    config = ReviewConfiguration()

    config.apply_snapshot({"timeoutMs": 9_999_000})
    config.apply_snapshot({"timeoutMs": 1000})

    assert config.timeout_seconds == 60.0
