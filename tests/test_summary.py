from __future__ import annotations

from pathlib import Path

import stubgen


def _make_file(name: str, lines: int) -> stubgen.FileWriteResult:
    return stubgen.FileWriteResult(
        filename=name, path=Path("/tmp") / name, line_count=lines, byte_count=lines * 10
    )


def _make_summary(**overrides: object) -> stubgen.GenerationSummary:
    base: dict[str, object] = {
        "source_label": "psa/crypto.h, psa/crypto_extra.h",
        "output_dir": "out",
        "operation_mode": stubgen.OPERATION_MODE_HANDLE,
        "operation_count": 13,
        "excluded": (("constructor", 1), ("deny-list", 3), ("family", 2)),
        "unparsed_count": 1,
        "files": (
            _make_file(stubgen.FILE_FUNCTION_CODES, 31),
            _make_file(stubgen.FILE_CLIENT, 1450),
            _make_file(stubgen.FILE_SERVER, 1210),
        ),
    }
    base.update(overrides)
    return stubgen.GenerationSummary(**base)


def test_format_generation_summary_layout() -> None:
    text = stubgen.format_generation_summary(_make_summary())

    assert text.splitlines() == [
        "psasim stubs generated:",
        "",
        "  Sources:    psa/crypto.h, psa/crypto_extra.h",
        "  Output:     out",
        "  Mode:       handle",
        "",
        "  Operations:",
        "    Wrapped:        13",
        "    Excluded:        6  (1 constructor, 3 deny-list, 2 family)",
        "    Not parsed:      1",
        "",
        "  Files written:",
        "    psa_functions_codes.h            31 lines",
        "    psa_sim_crypto_client.c       1,450 lines",
        "    psa_sim_crypto_server.c       1,210 lines",
        "",
        "  Total: 2,691 lines across 3 files",
    ]
    assert text.endswith("\n")


def test_format_generation_summary_without_exclusions() -> None:
    text = stubgen.format_generation_summary(_make_summary(excluded=()))

    assert "    Excluded:        0\n" in text


def test_build_generation_summary_counts_reasons(
    tmp_path: Path, fixture_include_dir: Path
) -> None:
    paths = [fixture_include_dir / header for header in stubgen.DEFAULT_HEADERS]
    catalog, scan = stubgen.load_catalog(paths)
    config = stubgen.WriteConfig(sources=stubgen.DEFAULT_HEADERS)
    write_result = stubgen.PackageWriteResult(output_dir=tmp_path, files=())

    summary = stubgen.build_generation_summary(config, catalog, scan, write_result)

    assert summary.operation_count == 13
    assert summary.excluded == (("constructor", 1), ("deny-list", 3), ("family", 2))
    assert summary.unparsed_count == 1
    assert summary.output_dir == str(tmp_path)
