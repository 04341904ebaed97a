from pathlib import Path

from pprog.instructions import SYSTEM_PROMPT, InstructionLoader


def test_system_prompt_renders_packaged_template(tmp_path: Path):
    loader = InstructionLoader(personal_dir=tmp_path / "none")

    prompt = loader.system_prompt(tmp_path, file_tree=lambda root: f"{root.name}/\n  Cargo.toml")

    assert "compile_check" in prompt
    assert str(tmp_path) in prompt
    assert "Cargo.toml" in prompt
    assert "{file_tree}" not in prompt


def test_system_prompt_without_tree(tmp_path: Path):
    loader = InstructionLoader(personal_dir=tmp_path / "none")

    prompt = loader.system_prompt(tmp_path)

    assert "(not available)" in prompt


def test_personal_override_wins(tmp_path: Path):
    personal = tmp_path / "personal"
    personal.mkdir()
    (personal / SYSTEM_PROMPT).write_text("Custom prompt for {project_root} {unknown}", encoding="utf-8")
    loader = InstructionLoader(personal_dir=personal)

    prompt = loader.system_prompt(tmp_path)

    assert prompt == f"Custom prompt for {tmp_path} {{unknown}}"
