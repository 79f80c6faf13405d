"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

from mcpfleet.templates import TemplateEngine

SERVER = {
    "id": "github",
    "topology": "api_based",
    "command": "docker",
    "args": ["run", "--rm", "-i", "ghcr.io/github/github-mcp-server"],
    "image": "ghcr.io/github/github-mcp-server",
}


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in fragments render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("clients/api_based.json.j2", {"server": SERVER})

    assert output.startswith('"github": {')
    assert '"command": "docker"' in output
    assert engine.has_template("clients/remote.json.j2")
    assert not engine.has_template("clients/hybrid.json.j2")


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "fragment.json"

    changed = engine.render_to_path(
        "clients/standalone.json.j2",
        destination,
        {"server": SERVER},
        mode=0o600,
    )

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Second render with same content should be a no-op.
    changed_again = engine.render_to_path(
        "clients/standalone.json.j2",
        destination,
        {"server": SERVER},
        mode=0o600,
    )
    assert changed_again is False


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "clients" / "api_based.json.j2"
    override_template.parent.mkdir(parents=True, exist_ok=True)
    override_template.write_text("override {{ server.id }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    rendered = engine.render_to_string("clients/api_based.json.j2", {"server": SERVER})

    assert rendered == "override github"


def test_missing_override_directory_falls_back(tmp_path: Path) -> None:
    """A non-existent override directory is ignored."""
    engine = TemplateEngine.with_overrides(tmp_path / "absent")

    assert engine.has_template("env_example.j2")
