from pathlib import Path

import pytest

import stubgen


def _make_config(include_dir: Path, output_dir: Path, **overrides: object) -> stubgen.GenerateConfig:
    base: dict[str, object] = {
        "include_dir": include_dir,
        "headers": stubgen.DEFAULT_HEADERS,
        "output_dir": output_dir,
        "debug": False,
        "operation_mode": stubgen.OPERATION_MODE_HANDLE,
        "previous_codes": None,
    }
    base.update(overrides)
    return stubgen.GenerateConfig(**base)


def _write_header(tmp_path: Path, body: str) -> Path:
    include_dir = tmp_path / "include"
    (include_dir / "psa").mkdir(parents=True)
    (include_dir / "psa" / "crypto.h").write_text(body, encoding="utf-8")
    return include_dir


def test_run_generate_writes_all_artifacts(
    tmp_path: Path, fixture_include_dir: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    result = stubgen.run_generate(_make_config(fixture_include_dir, tmp_path))

    assert {f.filename for f in result.files} == set(stubgen.ARTIFACT_ORDER)
    out = capsys.readouterr().out
    assert "NOT PARSED: PSA_DEPRECATED psa_status_t psa_legacy_query(int flags);" in out
    assert "Catalog: 13 operations, 6 excluded" in out
    assert "psasim stubs generated:" in out


def test_run_generate_is_deterministic(tmp_path: Path, fixture_include_dir: Path) -> None:
    first = stubgen.run_generate(_make_config(fixture_include_dir, tmp_path / "a"))
    second = stubgen.run_generate(_make_config(fixture_include_dir, tmp_path / "b"))

    for a, b in zip(first.files, second.files):
        assert a.path.read_bytes() == b.path.read_bytes()


def test_excluded_operations_appear_in_no_artifact(
    tmp_path: Path, fixture_include_dir: Path
) -> None:
    result = stubgen.run_generate(_make_config(fixture_include_dir, tmp_path))

    for written in result.files:
        text = written.path.read_text(encoding="utf-8")
        for name in (
            "psa_pake_setup",
            "psa_pake_abort",
            "psa_key_attributes_init",
            "psa_key_derivation_verify_bytes",
            "mbedtls_psa_get_stats",
        ):
            assert name not in text
            assert name.upper() not in text


def test_code_table_and_dispatcher_agree(tmp_path: Path, fixture_include_dir: Path) -> None:
    stubgen.run_generate(_make_config(fixture_include_dir, tmp_path))

    codes = stubgen.parse_function_codes(
        (tmp_path / stubgen.FILE_FUNCTION_CODES).read_text(encoding="utf-8")
    )
    server = (tmp_path / stubgen.FILE_SERVER).read_text(encoding="utf-8")
    client = (tmp_path / stubgen.FILE_CLIENT).read_text(encoding="utf-8")

    assert codes["PSA_CRYPTO_INIT"] == 100
    for enum_name in codes:
        assert f"        case {enum_name}:" in server
        assert f"psa_crypto_call({enum_name}," in client


def test_previous_codes_must_be_extended_not_reordered(
    tmp_path: Path, fixture_include_dir: Path
) -> None:
    previous = tmp_path / "previous.h"
    previous.write_text(
        "enum {\n    PSA_CRYPTO_INIT = 100,\n    PSA_HASH_ABORT = 101,\n};\n",
        encoding="utf-8",
    )

    with pytest.raises(stubgen.GenerationError) as exc_info:
        stubgen.run_generate(
            _make_config(fixture_include_dir, tmp_path / "out", previous_codes=previous)
        )

    assert exc_info.value.code == "INCOMPATIBLE_CODES"
    assert not (tmp_path / "out").exists()


def test_previous_codes_from_same_headers_are_compatible(
    tmp_path: Path, fixture_include_dir: Path
) -> None:
    first = stubgen.run_generate(_make_config(fixture_include_dir, tmp_path / "a"))
    previous = first.output_dir / stubgen.FILE_FUNCTION_CODES

    second = stubgen.run_generate(
        _make_config(fixture_include_dir, tmp_path / "b", previous_codes=previous)
    )

    assert len(second.files) == 3


def test_main_reports_generation_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    include_dir = _write_header(
        tmp_path,
        "psa_status_t psa_crypto_init(void);\n"
        "psa_status_t psa_sign(const uint8_t *input, size_t length);\n",
    )

    with pytest.raises(SystemExit) as exc_info:
        stubgen.main(
            [
                "--include-dir",
                str(include_dir),
                "--header",
                "psa/crypto.h",
                "--output-dir",
                str(tmp_path / "out"),
            ]
        )

    assert exc_info.value.code == 1
    assert "Generation error [UNPAIRED_BUFFER]:" in capsys.readouterr().out


def test_main_generates_minimal_header(tmp_path: Path) -> None:
    include_dir = _write_header(tmp_path, "psa_status_t psa_crypto_init(void);\n")

    stubgen.main(
        [
            "--include-dir",
            str(include_dir),
            "--header",
            "psa/crypto.h",
            "--output-dir",
            str(tmp_path / "out"),
        ]
    )

    codes = (tmp_path / "out" / stubgen.FILE_FUNCTION_CODES).read_text(encoding="utf-8")
    assert "    PSA_CRYPTO_INIT = 100,\n};" in codes
