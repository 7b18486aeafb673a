from __future__ import annotations

import os
from pathlib import Path

import pytest

from dotkeep.context import HostContext
from dotkeep.differ import NO_DIFFERENCES, unified_diff
from dotkeep.store import RenderStore
from dotkeep.templates import TemplateEngine, TemplateRenderError, conflict_path, iter_templates, rendered_path

HOST = HostContext(os="linux", distro="arch", hostname="box", user="me")


@pytest.fixture
def store(tmp_path: Path):
    with RenderStore.open(tmp_path / "state.db") as opened:
        yield opened


def _engine(tmp_path: Path, store: RenderStore | None, **kwargs) -> tuple[TemplateEngine, Path]:
    backup_root = tmp_path / "backup"
    folder = backup_root / "git"
    folder.mkdir(parents=True)
    return TemplateEngine(store, backup_root, HOST, **kwargs), folder


def test_render_folder_writes_output_and_link(tmp_path: Path, store: RenderStore) -> None:
    engine, folder = _engine(tmp_path, store)
    template = folder / "gitconfig.tmpl"
    template.write_text("[user]\n  name = {{ user }}@{{ hostname }} on {{ os }}/{{ distro }}\n")

    written = engine.render_folder(folder)

    output = rendered_path(template)
    assert written == [output]
    assert output.read_text() == "[user]\n  name = me@box on linux/arch\n"
    link = folder / "gitconfig"
    assert link.is_symlink()
    assert os.readlink(link) == "gitconfig.tmpl.rendered"

    record = store.get_latest_render("git/gitconfig.tmpl")
    assert record is not None
    assert record.pure_render == output.read_bytes()
    assert record.platform_os == "linux"
    assert record.platform_host == "box"


def test_iter_templates_skips_outputs(tmp_path: Path) -> None:
    folder = tmp_path / "cfg"
    (folder / "sub").mkdir(parents=True)
    for name in ("a.tmpl", "a.tmpl.rendered", "a.tmpl.conflict", "plain.txt", ".tmpl"):
        (folder / name).write_text("")
    (folder / "sub" / "b.tmpl").write_text("")

    assert [path.relative_to(folder).as_posix() for path in iter_templates(folder)] == ["a.tmpl", "sub/b.tmpl"]


def test_unchanged_template_is_skipped(tmp_path: Path, store: RenderStore) -> None:
    engine, folder = _engine(tmp_path, store)
    (folder / "a.tmpl").write_text("value\n")

    engine.render_folder(folder)
    assert engine.render_folder(folder) == []
    assert len(store.get_render_history("git/a.tmpl", 10)) == 1

    assert engine.render_folder(folder, force=True) == [rendered_path(folder / "a.tmpl")]
    assert len(store.get_render_history("git/a.tmpl", 10)) == 2


def test_outdated_detection(tmp_path: Path, store: RenderStore) -> None:
    engine, folder = _engine(tmp_path, store)
    template = folder / "a.tmpl"
    template.write_text("one\n")

    assert engine.has_outdated_templates(folder) is True

    engine.render_folder(folder)
    assert engine.has_outdated_templates(folder) is False

    template.write_text("two\n")
    assert engine.has_outdated_templates(folder) is True


def test_modified_detection_and_conflict_file(tmp_path: Path, store: RenderStore) -> None:
    engine, folder = _engine(tmp_path, store)
    template = folder / "a.tmpl"
    template.write_text("os={{ os }}\n")
    engine.render_folder(folder)
    output = rendered_path(template)

    assert engine.has_modified_rendered_files(folder) is False

    output.write_text("os=linux\nlocal tweak\n")
    assert engine.has_modified_rendered_files(folder) is True
    modified = engine.modified_templates(folder)
    assert [item.key for item in modified] == ["git/a.tmpl"]
    assert modified[0].pure_render == b"os=linux\n"
    assert modified[0].current == b"os=linux\nlocal tweak\n"

    template.write_text("os={{ os }}!\n")
    engine.render_folder(folder)

    assert output.read_text() == "os=linux\nlocal tweak\n"
    assert conflict_path(template).read_text() == "os=linux!\n"


def test_dropped_trailing_newline_is_modified_and_diffable(tmp_path: Path, store: RenderStore) -> None:
    engine, folder = _engine(tmp_path, store)
    template = folder / "motd.tmpl"
    template.write_text("hello {{ os }}\n")
    engine.render_folder(folder)
    rendered_path(template).write_bytes(b"hello linux")

    assert engine.has_modified_rendered_files(folder) is True
    modified = engine.modified_templates(folder)[0]
    report = unified_diff(modified.pure_render, modified.current)
    assert report != NO_DIFFERENCES
    assert "- hello linux" in report.splitlines()
    assert "+ hello linux" in report.splitlines()


def test_history_is_pruned_after_render(tmp_path: Path, store: RenderStore) -> None:
    engine, folder = _engine(tmp_path, store, history_keep=2)
    template = folder / "a.tmpl"
    for index in range(5):
        template.write_text(f"{index}\n")
        engine.render_folder(folder, force=True)

    history = store.get_render_history("git/a.tmpl", 10)
    assert [record.pure_render for record in history] == [b"4\n", b"3\n"]


def test_forget_drops_history(tmp_path: Path, store: RenderStore) -> None:
    engine, folder = _engine(tmp_path, store)
    (folder / "a.tmpl").write_text("a\n")
    (folder / "b.tmpl").write_text("b\n")
    engine.render_folder(folder)
    store.save_render("other/c.tmpl", b"c", "h", "linux", "box")

    assert engine.forget(folder) == 2
    assert store.template_paths() == [("other/c.tmpl", 1)]


def test_undefined_variable_raises(tmp_path: Path, store: RenderStore) -> None:
    engine, folder = _engine(tmp_path, store)
    (folder / "a.tmpl").write_text("{{ nope }}\n")

    with pytest.raises(TemplateRenderError):
        engine.render_folder(folder)


def test_without_store_drift_is_never_reported(tmp_path: Path) -> None:
    engine, folder = _engine(tmp_path, None)
    template = folder / "a.tmpl"
    template.write_text("x\n")

    assert engine.has_outdated_templates(folder) is False
    engine.render_folder(folder)
    rendered_path(template).write_text("edited\n")
    assert engine.has_modified_rendered_files(folder) is False
