from types import SimpleNamespace

import litellm
from typer.testing import CliRunner

from sandloop.cli import app
from sandloop import __version__
from sandloop.model_store import ModelStore

runner = CliRunner()


def _state_store(home):
    return ModelStore(home / ".sandloop" / "state.json")


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"SANDLOOP v{__version__}" in result.stdout


def test_models_lists_configured_models():
    result = runner.invoke(app, ["models"])
    assert result.exit_code == 0
    assert "gpt-4o-mini" in result.stdout


def test_select_model_persists_choice(isolated_home):
    result = runner.invoke(app, ["select-model", "openai/gpt-4o"])
    assert result.exit_code == 0
    assert _state_store(isolated_home).get() == "openai/gpt-4o"


def test_select_model_interactive(isolated_home):
    result = runner.invoke(app, ["select-model"], input="2\n")
    assert result.exit_code == 0
    assert _state_store(isolated_home).get() == "openai/gpt-4o"


def test_select_model_rejects_unknown(isolated_home):
    result = runner.invoke(app, ["select-model", "nope/model"])
    assert result.exit_code == 1
    assert _state_store(isolated_home).get() is None


def test_prompt_streams_reply(monkeypatch):
    async def fake_acompletion(**kwargs):
        async def gen():
            for text in ("Hello", " there"):
                yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])
        return gen()

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    result = runner.invoke(app, ["prompt", "say hi", "--model", "openai/gpt-4o-mini"])
    assert result.exit_code == 0
    assert "Hello there" in result.stdout


def _capture_model(monkeypatch):
    seen = {}

    async def fake_acompletion(**kwargs):
        seen["model"] = kwargs["model"]

        async def gen():
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="ok"))])
        return gen()

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
    return seen


def test_unavailable_stored_model_asks_and_remembers(isolated_home, monkeypatch):
    _state_store(isolated_home).set("retired/model")
    seen = _capture_model(monkeypatch)

    result = runner.invoke(app, ["prompt", "say hi"], input="2\n")

    assert result.exit_code == 0
    assert seen["model"] == "openai/gpt-4o"
    assert _state_store(isolated_home).get() == "openai/gpt-4o"


def test_first_use_asks_for_model(isolated_home, monkeypatch):
    seen = _capture_model(monkeypatch)

    result = runner.invoke(app, ["prompt", "say hi"], input="3\n")

    assert result.exit_code == 0
    assert seen["model"] == "anthropic/claude-3-5-sonnet-latest"
    assert _state_store(isolated_home).get() == "anthropic/claude-3-5-sonnet-latest"


def test_stored_model_is_used_without_asking(isolated_home, monkeypatch):
    _state_store(isolated_home).set("gemini/gemini-2.0-flash")
    seen = _capture_model(monkeypatch)

    result = runner.invoke(app, ["prompt", "say hi"])

    assert result.exit_code == 0
    assert seen["model"] == "gemini/gemini-2.0-flash"
    assert "Select a model" not in result.stdout


def test_no_answer_falls_back_to_default(isolated_home, monkeypatch):
    seen = _capture_model(monkeypatch)

    result = runner.invoke(app, ["prompt", "say hi"])

    assert result.exit_code == 0
    assert seen["model"] == "openai/gpt-4o-mini"
    assert _state_store(isolated_home).get() is None


def test_prompt_reports_request_failure(monkeypatch):
    async def fake_acompletion(**kwargs):
        raise ValueError("no api key")

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    result = runner.invoke(app, ["prompt", "say hi", "--model", "openai/gpt-4o-mini"])
    assert result.exit_code == 1
    assert "LLM request failed" in result.stdout


def test_run_rejects_missing_workspace(tmp_path):
    result = runner.invoke(app, ["run", "do it", "--repo", str(tmp_path / "missing")])
    assert result.exit_code == 1
    assert "Workspace not found" in result.stdout


def test_status_shows_limits():
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "Max iterations" in result.stdout
