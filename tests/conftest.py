import argparse
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import stubgen  # noqa: E402

FIXTURE_INCLUDE_DIR = Path(__file__).resolve().parent / "fixtures" / "include"

HASH_COMPUTE_PROTOTYPE = (
    "psa_status_t psa_hash_compute(psa_algorithm_t alg, "
    "const uint8_t *input, size_t input_length, "
    "uint8_t *hash, size_t hash_size, size_t *hash_length);"
)


@pytest.fixture
def fixture_include_dir() -> Path:
    return FIXTURE_INCLUDE_DIR


@pytest.fixture
def fixture_catalog() -> stubgen.OperationCatalog:
    paths = [FIXTURE_INCLUDE_DIR / header for header in stubgen.DEFAULT_HEADERS]
    catalog, _scan = stubgen.load_catalog(paths)
    return catalog


@pytest.fixture
def make_args() -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "include_dir": FIXTURE_INCLUDE_DIR,
            "header": None,
            "output_dir": None,
            "debug": False,
            "operation_mode": stubgen.OPERATION_MODE_HANDLE,
            "previous_codes": None,
            "list_operations": False,
            "filter": None,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_operation() -> Callable[..., stubgen.OperationInfo]:
    """Build an OperationInfo from a C prototype string."""

    def _make_operation(prototype: str) -> stubgen.OperationInfo:
        return stubgen.classify_prototype(stubgen.parse_prototype(prototype))

    return _make_operation


@pytest.fixture
def hash_compute(make_operation) -> stubgen.OperationInfo:
    return make_operation(HASH_COMPUTE_PROTOTYPE)


@pytest.fixture
def make_catalog(make_operation) -> Callable[..., stubgen.OperationCatalog]:
    def _make_catalog(*prototypes: str) -> stubgen.OperationCatalog:
        raw = [stubgen.parse_prototype("psa_status_t psa_crypto_init(void);")]
        raw.extend(stubgen.parse_prototype(p) for p in prototypes)
        return stubgen.build_catalog(raw)

    return _make_catalog
