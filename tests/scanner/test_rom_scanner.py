import pytest

from romshelf.scanner.rom_scanner import scan_console, scan_roms


@pytest.mark.unit
def test_scan_roms_one_console_per_folder(rom_tree):
    root = rom_tree({
        "snes": ["Chrono Trigger (USA).sfc", "readme.txt"],
        "nes": ["Contra (USA).nes", "Metroid (USA).nes"],
    })

    entries = scan_roms([str(root)])

    assert [(e.platform_key, e.title) for e in entries] == [
        ("nes", "Contra (USA)"),
        ("nes", "Metroid (USA)"),
        ("snes", "Chrono Trigger (USA)"),
    ]
    assert all(e.file_size == 16 for e in entries)
    assert entries[0].file_path == str((root / "nes" / "Contra (USA).nes").resolve())


@pytest.mark.unit
def test_hidden_files_and_folders_are_ignored(rom_tree):
    root = rom_tree({
        "nes": [".hidden.nes", "Tetris.nes"],
        ".trash": ["Deleted.nes"],
    })
    entries = scan_roms([str(root)])
    assert [e.title for e in entries] == ["Tetris"]


@pytest.mark.unit
def test_nested_files_belong_to_the_console_folder(rom_tree):
    root = rom_tree({"gba": []})
    nested = root / "gba" / "Hacks"
    nested.mkdir()
    (nested / "Pokemon Ruby (Hack).gba").write_bytes(b"\x01" * 4)

    entries = scan_console(root / "gba")
    assert len(entries) == 1
    assert entries[0].platform_key == "gba"
    assert entries[0].file_size == 4


@pytest.mark.unit
def test_missing_roots_are_skipped(rom_tree, tmp_path):
    root = rom_tree({"nes": ["Contra.nes"]})
    entries = scan_roms([str(tmp_path / "missing"), str(root)])
    assert len(entries) == 1


@pytest.mark.unit
def test_custom_extensions(rom_tree):
    root = rom_tree({"nes": ["Contra.nes", "Contra.NES.bak", "Odd.XYZ"]})
    entries = scan_console(root / "nes", extensions=[".xyz"])
    assert [e.title for e in entries] == ["Odd"]
