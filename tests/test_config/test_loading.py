import json
from pathlib import Path

import pprog.config as config_module
from pprog.config import Config, detect_check_cmd


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: openai\n  model: gpt-4o\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "pprog.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: deepseek\n"
            "  model: deepseek-chat\n"
            "tools:\n"
            "  check_cmd: cargo check\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.provider == "deepseek"
    assert cfg.model.model == "deepseek-chat"
    assert cfg.tools.check_cmd == "cargo check"


def test_load_falls_back_to_home_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("loop:\n  max_tool_iterations: 7\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.loop.max_tool_iterations == 7


def test_missing_file_means_defaults(tmp_path: Path):
    cfg = Config.load(tmp_path / "absent.yaml")

    assert cfg.model.provider == "anthropic"
    assert cfg.loop.max_tool_iterations == 50
    assert cfg.tools.max_output_chars == 10000


def test_env_fills_sections_the_yaml_leaves_unset(monkeypatch, tmp_path: Path):
    cfg_path = tmp_path / "pprog.yaml"
    cfg_path.write_text("model:\n  provider: openai\n", encoding="utf-8")
    monkeypatch.setenv("PPROG_CONTEXT__MAX_TOKENS", "32000")

    cfg = Config.load(cfg_path)

    assert cfg.model.provider == "openai"
    assert cfg.context.max_tokens == 32000


def test_yaml_value_wins_over_env(monkeypatch, tmp_path: Path):
    cfg_path = tmp_path / "pprog.yaml"
    cfg_path.write_text("model:\n  provider: openai\n", encoding="utf-8")
    monkeypatch.setenv("PPROG_MODEL__PROVIDER", "deepseek")

    cfg = Config.load(cfg_path)

    assert cfg.model.provider == "openai"


def test_save_round_trip(tmp_path: Path):
    cfg = Config()
    cfg.tools.check_cmd = "tsc --noEmit"
    cfg.project.root = "app"

    saved = cfg.save(tmp_path / "out" / "pprog.yaml")
    loaded = Config.load(saved)

    assert loaded.tools.check_cmd == "tsc --noEmit"
    assert loaded.resolved_project_root(tmp_path) == (tmp_path / "app").resolve()


def test_detect_check_cmd_by_project_marker(tmp_path: Path):
    assert detect_check_cmd(tmp_path) == ""

    node = tmp_path / "node"
    node.mkdir()
    (node / "package.json").write_text(json.dumps({"main": "index.js"}), encoding="utf-8")
    assert detect_check_cmd(node) == "node index.js"

    rust = tmp_path / "rust"
    rust.mkdir()
    (rust / "Cargo.toml").write_text("[package]\n", encoding="utf-8")
    assert detect_check_cmd(rust) == "cargo check"

    ts = tmp_path / "ts"
    ts.mkdir()
    (ts / "tsconfig.json").write_text("{}", encoding="utf-8")
    (ts / "package.json").write_text("{}", encoding="utf-8")
    assert detect_check_cmd(ts) == "tsc --noEmit"
