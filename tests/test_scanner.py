from pathlib import Path

import pytest

import stubgen


def _scan(text: str) -> stubgen.ScanResult:
    return stubgen.scan_declarations(stubgen.split_logical_lines(text))


def test_split_logical_lines_strips_comments_and_collapses_whitespace() -> None:
    text = (
        "/* block\n   comment */\n"
        "psa_status_t   psa_x(int  a);   // trailing\n"
        "\n"
        "\t\tint b;\n"
    )

    assert stubgen.split_logical_lines(text) == [
        "psa_status_t psa_x(int a);",
        "int b;",
    ]


def test_split_logical_lines_keeps_code_after_url_in_block_comment() -> None:
    text = "/* see https://example.com/psa */\npsa_status_t psa_y(void);\n"

    assert stubgen.split_logical_lines(text) == ["psa_status_t psa_y(void);"]


def test_read_sources_concatenates_headers_in_order(tmp_path: Path) -> None:
    first = tmp_path / "a.h"
    second = tmp_path / "b.h"
    first.write_text("int a;\n", encoding="utf-8")
    second.write_text("int b;\n", encoding="utf-8")

    assert stubgen.read_sources([first, second]) == ["int a;", "int b;"]


def test_scan_joins_multiline_prototype() -> None:
    result = _scan(
        "psa_status_t psa_hash_setup(psa_hash_operation_t *operation,\n"
        "                            psa_algorithm_t alg);\n"
    )

    assert len(result.prototypes) == 1
    proto = result.prototypes[0]
    assert proto.return_type == "psa_status_t"
    assert proto.name == "psa_hash_setup"
    assert proto.parameters == ("psa_hash_operation_t *operation", "psa_algorithm_t alg")


def test_scan_drops_static_inline_functions() -> None:
    result = _scan(
        "static inline struct psa_hash_operation_s psa_hash_operation_init(void)\n"
        "{\n"
        "    const struct psa_hash_operation_s v = PSA_HASH_OPERATION_INIT;\n"
        "    return v;\n"
        "}\n"
    )

    assert result.prototypes == ()
    assert result.unparsed == ()


def test_scan_skips_continued_directives() -> None:
    result = _scan(
        "#define PSA_THING(x) \\\n"
        "    psa_helper(x) + \\\n"
        "    psa_other(x)\n"
        "psa_status_t psa_crypto_init(void);\n"
    )

    assert [p.name for p in result.prototypes] == ["psa_crypto_init"]
    assert result.unparsed == ()


def test_scan_skips_nested_compound_bodies() -> None:
    result = _scan(
        "struct psa_hash_operation_s {\n"
        "    union {\n"
        "        uint8_t psa_ctx[4];\n"
        "    } ctx;\n"
        "    psa_algorithm_t alg;\n"
        "};\n"
        "psa_status_t psa_crypto_init(void);\n"
    )

    assert [p.name for p in result.prototypes] == ["psa_crypto_init"]
    assert result.unparsed == ()


def test_scan_skips_typedefs_and_assignments() -> None:
    result = _scan(
        "typedef uint32_t psa_algorithm_t;\n"
        "const psa_key_id_t psa_default = 0;\n"
    )

    assert result.prototypes == ()
    assert result.unparsed == ()


def test_scan_reports_unrecognised_psa_lines() -> None:
    result = _scan("PSA_DEPRECATED psa_status_t psa_legacy_query(int flags);\nint other;\n")

    assert result.prototypes == ()
    assert result.unparsed == ("PSA_DEPRECATED psa_status_t psa_legacy_query(int flags);",)


def test_parse_prototype_keeps_declaration_text() -> None:
    proto = stubgen.parse_prototype("void   mbedtls_psa_crypto_free( void );")

    assert proto.return_type == "void"
    assert proto.name == "mbedtls_psa_crypto_free"
    assert proto.parameters == ("void",)
    assert proto.declaration == "void mbedtls_psa_crypto_free( void );"


def test_parse_prototype_rejects_unparseable_statement() -> None:
    with pytest.raises(stubgen.GenerationError) as exc_info:
        stubgen.parse_prototype("psa_status_t psa_broken();")

    assert exc_info.value.code == "UNPARSEABLE_SIGNATURE"
    assert exc_info.value.context == "psa_status_t psa_broken();"


def test_split_parameters_is_flat() -> None:
    assert stubgen.split_parameters("int a , void (*cb)(int x, int y)") == (
        "int a",
        "void (*cb)(int x",
        "int y)",
    )


def test_fixture_headers_scan(fixture_include_dir: Path) -> None:
    paths = [fixture_include_dir / header for header in stubgen.DEFAULT_HEADERS]

    result = stubgen.scan_declarations(stubgen.read_sources(paths))

    names = {p.name for p in result.prototypes}
    assert len(result.prototypes) == 19
    assert "psa_hash_operation_init" not in names
    assert "psa_key_derivation_verify_bytes" in names
    assert result.unparsed == ("PSA_DEPRECATED psa_status_t psa_legacy_query(int flags);",)
