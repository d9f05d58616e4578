"""PSA Crypto client/server stub generator for psasim.

Reads the PSA Crypto function prototypes from the public headers and
generates the psasim RPC layer:

    psa_functions_codes.h      operation codes shared by client and server
    psa_sim_crypto_client.c    client wrappers marshalling each call
    psa_sim_crypto_server.c    server wrappers, dispatcher and teardown

Usage:
    python stubgen.py --include-dir tf-psa-crypto/include --output-dir psasim/src
"""

import argparse
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

DEFAULT_INCLUDE_DIR = Path("tf-psa-crypto") / "include"
DEFAULT_HEADERS = ("psa/crypto.h", "psa/crypto_extra.h")
DEFAULT_OUTPUT_DIR = Path(".")

OPERATION_MODE_HANDLE = "handle"
OPERATION_MODE_DIRECT = "direct"
OPERATION_MODES = (OPERATION_MODE_HANDLE, OPERATION_MODE_DIRECT)


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    include_dir: Path
    headers: tuple[str, ...]
    output_dir: Path
    debug: bool
    operation_mode: str
    previous_codes: Path | None


@dataclass(frozen=True)
class DiscoveryConfig:
    include_dir: Path
    headers: tuple[str, ...]
    filter_text: str | None


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "CONFLICT_GENERATE_DISCOVERY",
    "FILTER_WITHOUT_LIST",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate psasim client and server stubs for PSA Crypto"
    )

    parser.add_argument("--include-dir", type=Path, default=DEFAULT_INCLUDE_DIR)
    parser.add_argument("--header", action="append", default=None, metavar="RELPATH")
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument("--debug", action="store_true", default=False)
    parser.add_argument(
        "--operation-mode", choices=OPERATION_MODES, default=OPERATION_MODE_HANDLE
    )
    parser.add_argument("--previous-codes", type=Path, default=None)

    parser.add_argument("--list-operations", action="store_true", default=False)
    parser.add_argument("--filter", type=str, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    if args.filter and not args.list_operations:
        raise ConfigError(
            "FILTER_WITHOUT_LIST",
            "--filter requires --list-operations.",
            "Add --list-operations or remove --filter.",
        )

    has_generate_input = bool(
        args.output_dir is not None or args.debug or args.previous_codes is not None
    )
    if args.list_operations and has_generate_input:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "--list-operations cannot be combined with --output-dir, --debug "
            "or --previous-codes.",
            "Either list the operations or generate the stubs.",
        )

    include_dir = validate_path_exists(
        args.include_dir,
        "--include-dir",
        "Point --include-dir at the directory holding psa/crypto.h, e.g.\n"
        "  --include-dir tf-psa-crypto/include",
    )
    headers = tuple(args.header) if args.header else DEFAULT_HEADERS
    for header in headers:
        validate_path_exists(
            include_dir / header,
            "--header",
            "Header paths are relative to --include-dir.",
        )

    if args.list_operations:
        return DiscoveryConfig(
            include_dir=include_dir,
            headers=headers,
            filter_text=args.filter,
        )

    previous_codes = (
        validate_path_exists(args.previous_codes, "--previous-codes")
        if args.previous_codes is not None
        else None
    )

    return GenerateConfig(
        include_dir=include_dir,
        headers=headers,
        output_dir=args.output_dir if args.output_dir is not None else DEFAULT_OUTPUT_DIR,
        debug=bool(args.debug),
        operation_mode=args.operation_mode,
        previous_codes=previous_codes,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


def source_paths(config: GenerateConfig | DiscoveryConfig) -> tuple[Path, ...]:
    return tuple(config.include_dir / header for header in config.headers)


# ===--- Generation errors ---=== #


VALID_GENERATION_ERROR_CODES = {
    "UNPARSEABLE_SIGNATURE",
    "UNPAIRED_BUFFER",
    "UNSUPPORTED_ARGUMENT",
    "UNSUPPORTED_RETURN_TYPE",
    "DUPLICATE_OPERATION",
    "MISSING_INITIALIZER",
    "INCOMPATIBLE_CODES",
}


class GenerationError(Exception):
    """A fatal problem with the input headers.

    Raised instead of guessing: a best-effort wrapper for a declaration we do
    not understand would marshal the wrong bytes on one side of the wire.
    """

    def __init__(self, code: str, message: str, context: str | None = None):
        if code not in VALID_GENERATION_ERROR_CODES:
            raise ValueError(f"Unknown generation error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context


# ===--- Constants ---=== #

FUNCTION_PREFIXES = ("mbedtls", "psa")
DOMAIN_MARKER = "psa_"
BYTE_TYPE = "uint8_t"
SIZE_TYPE = "size_t"

INITIALIZER_NAME = "psa_crypto_init"

# Operations we do not wrap, with the reason.
SKIP_FUNCTIONS = {
    "mbedtls_psa_crypto_free": "redefined rather than wrapped",
    "mbedtls_psa_external_get_random": "not in the default config, uses unsupported type",
    "mbedtls_psa_get_stats": "uses unsupported type",
    "mbedtls_psa_inject_entropy": "not in the default config, not for client use",
    "mbedtls_psa_platform_get_builtin_key": "not in the default config, uses unsupported type",
    "mbedtls_psa_register_se_key": "not in the default config, not for client use",
    "psa_get_key_slot_number": "not in the default config, uses unsupported type",
    "psa_key_derivation_verify_bytes": "not implemented yet",
    "psa_key_derivation_verify_key": "not implemented yet",
}
EXCLUDED_FAMILY_RE = re.compile(r"_pake_")
CONSTRUCTOR_RE = re.compile(r"_init$")

EXCLUSION_DENY_LIST = "deny-list"
EXCLUSION_FAMILY = "family"
EXCLUSION_CONSTRUCTOR = "constructor"

# (function, buffer parameter, declared size parameter) -> size parameter name
SIZE_PARAMETER_RENAMES = {
    (
        "psa_key_derivation_verify_bytes",
        "expected_output",
        "output_length",
    ): "expected_output_length",
}

KIND_SCALAR = "scalar"
KIND_CONST_BUFFER = "const-buffer"
KIND_MUTABLE_BUFFER = "mutable-buffer"
KIND_OPERATION_STATE = "operation-state"
KIND_PLAIN_POINTER = "plain-pointer"

# A call on an operation whose name ends in one of these leaves it inactive.
TERMINAL_SUFFIXES = ("_abort", "_finish", "_hash_verify")

# Codes below this are used by the transport (PSA_IPC_CONNECT,
# PSA_IPC_DISCONNECT, VERSION_REQUEST).
FIRST_OPERATION_CODE = 100

CLIENT_RECEIVE_CAPACITY = 24576


# ===--- Data classes ---=== #


@dataclass(frozen=True)
class RawPrototype:
    return_type: str
    name: str
    parameters: tuple[str, ...]
    declaration: str


@dataclass(frozen=True)
class ScanResult:
    prototypes: tuple[RawPrototype, ...]
    unparsed: tuple[str, ...]


@dataclass(frozen=True)
class ReturnInfo:
    type_name: str
    local_name: str
    default: str
    alloc_failure: str

    @property
    def is_void(self) -> bool:
        return self.type_name == "void"


RETURN_TYPES = {
    "psa_status_t": ReturnInfo(
        "psa_status_t",
        "status",
        "PSA_ERROR_CORRUPTION_DETECTED",
        "PSA_ERROR_INSUFFICIENT_MEMORY",
    ),
    "uint32_t": ReturnInfo("uint32_t", "value", "0", "0"),
    "void": ReturnInfo("void", "", "", ""),
}


@dataclass(frozen=True)
class ArgumentInfo:
    name: str
    type_name: str
    kind: str
    is_output: bool
    is_const: bool = False
    length_name: str | None = None

    @property
    def is_buffer(self) -> bool:
        return self.kind in (KIND_CONST_BUFFER, KIND_MUTABLE_BUFFER)

    @property
    def composite_name(self) -> str:
        if self.length_name is None:
            return self.name
        return f"{self.name}, {self.length_name}"

    def declaration(self) -> str:
        const = "const " if self.is_const else ""
        if self.is_buffer:
            return f"{const}{BYTE_TYPE} *{self.name}, {SIZE_TYPE} {self.length_name}"
        if self.kind == KIND_SCALAR:
            return f"{self.type_name} {self.name}"
        return f"{const}{self.type_name} *{self.name}"


@dataclass(frozen=True)
class OperationInfo:
    name: str
    return_info: ReturnInfo
    arguments: tuple[ArgumentInfo, ...]
    declaration: str = ""

    @property
    def enum_name(self) -> str:
        return self.name.upper()

    @property
    def is_initializer(self) -> bool:
        return self.name == INITIALIZER_NAME

    @property
    def is_terminal(self) -> bool:
        return self.name.endswith(TERMINAL_SUFFIXES)


@dataclass(frozen=True)
class ExcludedOperation:
    name: str
    reason: str


@dataclass(frozen=True)
class OperationCatalog:
    """The ordered set of operations every emitter renders.

    operations[0] is always the initializer; the rest are sorted by name.
    """

    operations: tuple[OperationInfo, ...]
    excluded: tuple[ExcludedOperation, ...] = ()

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(op.name for op in self.operations)

    @property
    def initializer(self) -> OperationInfo:
        return self.operations[0]

    def get(self, name: str) -> OperationInfo | None:
        for op in self.operations:
            if op.name == name:
                return op
        return None


# ===--- Source reader ---=== #

_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.S)
_LINE_COMMENT_RE = re.compile(r"//.*")
_WHITESPACE_RE = re.compile(r"\s+")


def split_logical_lines(text: str) -> list[str]:
    """Strip comments and whitespace noise; return the non-empty lines."""
    text = _BLOCK_COMMENT_RE.sub(" ", text)
    lines = []
    for raw in text.splitlines():
        line = _LINE_COMMENT_RE.sub("", raw)
        line = _WHITESPACE_RE.sub(" ", line).strip()
        if line:
            lines.append(line)
    return lines


def read_sources(paths: Sequence[Path]) -> list[str]:
    lines: list[str] = []
    for path in paths:
        lines.extend(split_logical_lines(Path(path).read_text(encoding="utf-8")))
    return lines


# ===--- Declaration scanner ---=== #

_PROTOTYPE_START_RE = re.compile(
    r"^(static(?:\s+inline)?\s+)?"
    r"((?:(?:enum|struct|union)\s+)?\w+\s*\**\s*)\s+"
    r"((?:" + "|".join(FUNCTION_PREFIXES) + r")_\w*)\("
)
_PROTOTYPE_RE = re.compile(r"(\w+)\s+\b(\w+)\s*\(\s*(.*\S)\s*\)\s*[;{]", re.S)
_COMPOUND_START_RE = re.compile(r"^(?:typedef +)?(enum|struct|union)[^;]*$")
_ASSIGNMENT_RE = re.compile(r" = .*;$")


def split_parameters(text: str) -> tuple[str, ...]:
    """Split a parameter list at every comma.

    Only a flat grammar is supported: a parameter with its own parentheses
    (function pointers) comes out in pieces and is rejected by the classifier.
    """
    return tuple(part.strip() for part in text.split(","))


def parse_prototype(statement: str) -> RawPrototype:
    statement = _WHITESPACE_RE.sub(" ", statement).strip()
    match = _PROTOTYPE_RE.search(statement)
    if match is None:
        raise GenerationError(
            "UNPARSEABLE_SIGNATURE",
            "Statement looks like a prototype but does not match "
            "'TYPE NAME(PARAMS);'",
            statement,
        )
    return_type, name, params = match.groups()
    declaration = statement[: match.end()].rstrip("{").strip()
    return RawPrototype(
        return_type=return_type,
        name=name,
        parameters=split_parameters(params),
        declaration=declaration,
    )


def _skip_compound(lines: Sequence[str], i: int) -> int:
    depth = 0
    opened = False
    while i < len(lines):
        line = lines[i]
        depth += line.count("{") - line.count("}")
        opened = opened or "{" in line
        if (opened and depth <= 0) or (not opened and ";" in line):
            return i + 1
        i += 1
    return i


def scan_declarations(lines: Sequence[str]) -> ScanResult:
    """Recognise prototypes among logical lines and skip everything else.

    Directives (with backslash continuations), enum/struct/union bodies,
    typedefs and assignments inside inline bodies are skipped whole. Other
    lines mentioning the PSA namespace are returned as unparsed diagnostics.
    """
    prototypes: list[RawPrototype] = []
    unparsed: list[str] = []
    i = 0
    while i < len(lines):
        line = lines[i]

        start = _PROTOTYPE_START_RE.match(line)
        if start:
            while ";" not in line and i + 1 < len(lines):
                i += 1
                line = f"{line} {lines[i]}"
            i += 1
            if start.group(1):
                # static functions are local to the header
                continue
            prototypes.append(parse_prototype(line))
            continue

        if line.startswith("#"):
            while line.endswith("\\") and i + 1 < len(lines):
                i += 1
                line = lines[i]
            i += 1
            continue

        if _COMPOUND_START_RE.match(line):
            i = _skip_compound(lines, i)
            continue

        if line.startswith("typedef ") or _ASSIGNMENT_RE.search(line):
            i += 1
            continue

        if DOMAIN_MARKER in line:
            unparsed.append(line)
        i += 1

    return ScanResult(prototypes=tuple(prototypes), unparsed=tuple(unparsed))


# ===--- Argument classifier ---=== #

_SCALAR_PARAM_RE = re.compile(r"^(\w+)\s+(\w+)$")
_BUFFER_PARAM_RE = re.compile(r"^(const\s+)?" + BYTE_TYPE + r"\s*\*\s*(\w+)$")
_SIZE_PARAM_RE = re.compile(r"^" + SIZE_TYPE + r"\s+(\w+)$")
_POINTER_PARAM_RE = re.compile(r"^(const\s+)?(\w+)\s*\*\s*(\w+)$")
_OPERATION_TYPE_RE = re.compile(r"^psa_\w+_operation_t$")


def _buffer_length_name(function: str, buffer_name: str, next_param: str) -> str:
    match = _SIZE_PARAM_RE.match(next_param)
    declared = match.group(1) if match else None
    declared = SIZE_PARAMETER_RENAMES.get((function, buffer_name, declared), declared)
    if declared is None or not re.fullmatch(rf"{re.escape(buffer_name)}_\w+", declared):
        raise GenerationError(
            "UNPAIRED_BUFFER",
            f"{function}: buffer '{buffer_name}' must be followed by "
            f"'{SIZE_TYPE} {buffer_name}_<suffix>', got '{next_param}'",
        )
    return declared


def classify_arguments(
    function: str, parameters: Sequence[str]
) -> tuple[ArgumentInfo, ...]:
    arguments: list[ArgumentInfo] = []
    i = 0
    while i < len(parameters):
        param = parameters[i]

        if param == "void":
            i += 1
            continue

        scalar = _SCALAR_PARAM_RE.match(param)
        if scalar:
            arguments.append(
                ArgumentInfo(
                    name=scalar.group(2),
                    type_name=scalar.group(1),
                    kind=KIND_SCALAR,
                    is_output=False,
                )
            )
            i += 1
            continue

        buffer = _BUFFER_PARAM_RE.match(param)
        if buffer:
            is_const = buffer.group(1) is not None
            name = buffer.group(2)
            if i == len(parameters) - 1:
                raise GenerationError(
                    "UNPAIRED_BUFFER",
                    f"{function}: buffer '{name}' is the last parameter, "
                    f"no '{SIZE_TYPE} {name}_<suffix>' follows",
                )
            arguments.append(
                ArgumentInfo(
                    name=name,
                    type_name=BYTE_TYPE,
                    kind=KIND_CONST_BUFFER if is_const else KIND_MUTABLE_BUFFER,
                    is_output=not is_const,
                    is_const=is_const,
                    length_name=_buffer_length_name(function, name, parameters[i + 1]),
                )
            )
            i += 2
            continue

        pointer = _POINTER_PARAM_RE.match(param)
        if pointer:
            is_const = pointer.group(1) is not None
            type_name = pointer.group(2)
            kind = (
                KIND_OPERATION_STATE
                if _OPERATION_TYPE_RE.match(type_name)
                else KIND_PLAIN_POINTER
            )
            arguments.append(
                ArgumentInfo(
                    name=pointer.group(3),
                    type_name=type_name,
                    kind=kind,
                    is_output=not is_const,
                    is_const=is_const,
                )
            )
            i += 1
            continue

        raise GenerationError(
            "UNSUPPORTED_ARGUMENT",
            f"{function}: cannot classify parameter '{param}'",
        )

    return tuple(arguments)


def classify_return(function: str, type_name: str) -> ReturnInfo:
    info = RETURN_TYPES.get(type_name)
    if info is None:
        raise GenerationError(
            "UNSUPPORTED_RETURN_TYPE",
            f"{function}: no default value known for return type '{type_name}'",
        )
    return info


def classify_prototype(proto: RawPrototype) -> OperationInfo:
    return OperationInfo(
        name=proto.name,
        return_info=classify_return(proto.name, proto.return_type),
        arguments=classify_arguments(proto.name, proto.parameters),
        declaration=proto.declaration,
    )


# ===--- Operation catalog ---=== #


def exclusion_reason(name: str) -> str | None:
    if name == INITIALIZER_NAME:
        return None
    if name in SKIP_FUNCTIONS:
        return EXCLUSION_DENY_LIST
    if EXCLUDED_FAMILY_RE.search(name):
        return EXCLUSION_FAMILY
    if CONSTRUCTOR_RE.search(name):
        return EXCLUSION_CONSTRUCTOR
    return None


def _signature(proto: RawPrototype) -> tuple[str, tuple[str, ...]]:
    return proto.return_type, proto.parameters


def build_catalog(prototypes: Sequence[RawPrototype]) -> OperationCatalog:
    """Filter, order and classify the scanned prototypes.

    Exclusions are decided on names alone, before duplicate checks and
    classification, so an excluded declaration never has to be understood.
    The initializer is exempt from the constructor rule and always comes
    first, since every other call needs the connection it establishes.

    Raises:
        GenerationError: DUPLICATE_OPERATION when a kept name is declared
            twice with a different return type or parameter list,
            MISSING_INITIALIZER when psa_crypto_init is not declared, or any
            classification error of a kept operation.
    """
    excluded: dict[str, ExcludedOperation] = {}
    by_name: dict[str, RawPrototype] = {}
    for proto in prototypes:
        reason = exclusion_reason(proto.name)
        if reason is not None:
            excluded.setdefault(proto.name, ExcludedOperation(proto.name, reason))
            continue
        previous = by_name.get(proto.name)
        if previous is not None and _signature(previous) != _signature(proto):
            raise GenerationError(
                "DUPLICATE_OPERATION",
                f"{proto.name} is declared twice with different signatures",
                f"{previous.declaration}\n{proto.declaration}",
            )
        by_name.setdefault(proto.name, proto)

    if INITIALIZER_NAME not in by_name:
        raise GenerationError(
            "MISSING_INITIALIZER",
            f"{INITIALIZER_NAME} is not declared in the input headers",
        )

    kept = sorted(name for name in by_name if name != INITIALIZER_NAME)
    ordered = [INITIALIZER_NAME, *kept]
    return OperationCatalog(
        operations=tuple(classify_prototype(by_name[name]) for name in ordered),
        excluded=tuple(excluded[name] for name in sorted(excluded)),
    )


def load_catalog(paths: Sequence[Path]) -> tuple[OperationCatalog, ScanResult]:
    scan = scan_declarations(read_sources(paths))
    return build_catalog(scan.prototypes), scan


# ===--- Operation codes ---=== #


@dataclass(frozen=True)
class OperationCode:
    name: str
    enum_name: str
    value: int


def assign_operation_codes(catalog: OperationCatalog) -> tuple[OperationCode, ...]:
    return tuple(
        OperationCode(op.name, op.enum_name, FIRST_OPERATION_CODE + index)
        for index, op in enumerate(catalog.operations)
    )


def generate_function_codes(codes: Sequence[OperationCode]) -> list[str]:
    lines = []
    lines.append("#ifndef _PSA_FUNCTIONS_CODES_H_")
    lines.append("#define  _PSA_FUNCTIONS_CODES_H_")
    lines.append("")
    lines.append("enum {")
    lines.append("    /* Start here to avoid overlap with PSA_IPC_CONNECT, PSA_IPC_DISCONNECT")
    lines.append("     * and VERSION_REQUEST */")
    for code in codes:
        lines.append(f"    {code.enum_name} = {code.value},")
    lines.append("};")
    lines.append("")
    lines.append("#endif /*  _PSA_FUNCTIONS_CODES_H_ */")
    return lines


_ENUM_BODY_RE = re.compile(r"enum\s*\{(.*?)\}", re.S)
_ENUM_ENTRY_RE = re.compile(r"^([A-Za-z_]\w*)\s*(?:=\s*(\d+))?$")


def parse_function_codes(text: str) -> dict[str, int]:
    """Read NAME -> value from a previously generated code table.

    Accepts both explicit (`NAME = 101,`) and implicit (`NAME,`) entries,
    counting implicit values on from the last explicit one.
    """
    text = _BLOCK_COMMENT_RE.sub(" ", text)
    text = _LINE_COMMENT_RE.sub("", text)
    body = _ENUM_BODY_RE.search(text)
    if body is None:
        raise GenerationError(
            "INCOMPATIBLE_CODES", "Previous code table has no enum body"
        )
    codes: dict[str, int] = {}
    next_value = 0
    for entry in body.group(1).split(","):
        entry = entry.strip()
        if not entry:
            continue
        match = _ENUM_ENTRY_RE.match(entry)
        if match is None:
            raise GenerationError(
                "INCOMPATIBLE_CODES",
                f"Cannot read previous code table entry '{entry}'",
            )
        if match.group(2) is not None:
            next_value = int(match.group(2))
        codes[match.group(1)] = next_value
        next_value += 1
    return codes


def compare_operation_codes(
    previous: dict[str, int], current: Sequence[OperationCode]
) -> list[str]:
    """List every way `current` breaks a client/server pair built on `previous`.

    An empty list means the new table only appends codes.
    """
    current_values = {code.enum_name: code.value for code in current}
    problems = []
    for enum_name, value in sorted(previous.items(), key=lambda item: item[1]):
        new_value = current_values.get(enum_name)
        if new_value is None:
            problems.append(f"{enum_name} ({value}) was removed")
        elif new_value != value:
            problems.append(f"{enum_name} moved from {value} to {new_value}")
    return problems


def check_code_compatibility(path: Path, codes: Sequence[OperationCode]) -> None:
    previous = parse_function_codes(Path(path).read_text(encoding="utf-8"))
    problems = compare_operation_codes(previous, codes)
    if problems:
        raise GenerationError(
            "INCOMPATIBLE_CODES",
            f"New code table is not an append-only extension of {path}",
            "\n".join(problems),
        )


# ===--- Wire layout ---=== #

ROLE_RETURN = "return"
ROLE_VALUE = "value"
ROLE_BUFFER = "buffer"
ROLE_CAPACITY = "capacity"
ROLE_OPERATION = "operation"


@dataclass(frozen=True)
class WireField:
    """One serialised item of a request or a reply.

    encoding is the suffix of the serialise primitive, e.g. "buffer" or
    "psa_algorithm_t". argument is None only for the return value.
    """

    role: str
    encoding: str
    argument: ArgumentInfo | None = None


def request_fields(operation: OperationInfo) -> tuple[WireField, ...]:
    """Fields the client sends after the begin marker, in declaration order.

    Output buffers travel as their capacity only; output-only pointers do
    not travel at all. Operation state always travels, since the server
    needs it to find the operation even when the call updates it.
    """
    fields = []
    for arg in operation.arguments:
        if arg.kind == KIND_SCALAR:
            fields.append(WireField(ROLE_VALUE, arg.type_name, arg))
        elif arg.kind == KIND_CONST_BUFFER:
            fields.append(WireField(ROLE_BUFFER, "buffer", arg))
        elif arg.kind == KIND_MUTABLE_BUFFER:
            # Capacity only: the server allocates the buffer the real call fills.
            fields.append(WireField(ROLE_CAPACITY, SIZE_TYPE, arg))
        elif arg.kind == KIND_OPERATION_STATE:
            fields.append(WireField(ROLE_OPERATION, arg.type_name, arg))
        elif not arg.is_output:
            fields.append(WireField(ROLE_VALUE, arg.type_name, arg))
    return tuple(fields)


def reply_fields(operation: OperationInfo) -> tuple[WireField, ...]:
    """Fields the server returns after the begin marker."""
    fields = []
    ret = operation.return_info
    if not ret.is_void:
        fields.append(WireField(ROLE_RETURN, ret.type_name))
    for arg in operation.arguments:
        if not arg.is_output:
            continue
        if arg.kind == KIND_MUTABLE_BUFFER:
            fields.append(WireField(ROLE_BUFFER, "buffer", arg))
        elif arg.kind == KIND_OPERATION_STATE:
            fields.append(WireField(ROLE_OPERATION, arg.type_name, arg))
        else:
            fields.append(WireField(ROLE_VALUE, arg.type_name, arg))
    return tuple(fields)


# ===--- C rendering helpers ---=== #


@dataclass(frozen=True)
class CLocal:
    """A local variable of a generated function.

    release, when set, is emitted in the function's single exit block, so
    every path out of the function frees what the declaration owns.
    """

    declaration: str
    release: str | None = None


def _on_failure(condition: str, failure: Sequence[str] = ()) -> list[str]:
    lines = [f"    if ({condition}) {{"]
    lines.extend(f"        {statement}" for statement in failure)
    lines.append("        goto exit;")
    lines.append("    }")
    return lines


def _ok_call(function: str, *arguments: str, failure: Sequence[str] = ()) -> list[str]:
    if len(arguments) == 1:
        call = [f"    ok = {function}({arguments[0]});"]
    else:
        call = [f"    ok = {function}("]
        call.extend(f"        {argument}," for argument in arguments[:-1])
        call.append(f"        {arguments[-1]});")
    return ["", *call, *_on_failure("!ok", failure)]


def _sum_lines(target: str, terms: Sequence[str]) -> list[str]:
    lines = [f"    size_t {target} ="]
    for index, term in enumerate(terms):
        sep = ";" if index == len(terms) - 1 else " +"
        lines.append(f"        {term}{sep}")
    return lines


def _exit_block(locals_: Sequence[CLocal], extra: Sequence[str] = ()) -> list[str]:
    lines = ["", "exit:"]
    lines.extend(f"    {local.release}" for local in locals_ if local.release)
    lines.extend(f"    {release}" for release in extra)
    return lines


def format_signature(operation: OperationInfo) -> list[str]:
    """Render the declaration the client wrapper must match exactly."""
    params = [arg.declaration() for arg in operation.arguments] or ["void"]
    lines = [f"{operation.return_info.type_name} {operation.name}("]
    lines.extend(f"    {param}," for param in params[:-1])
    lines.append(f"    {params[-1]}")
    lines.append("    )")
    return lines


DEBUG_HELPERS = r"""
static inline char hex_digit(char nibble)
{
    return (nibble < 10) ? (nibble + '0') : (nibble + 'a' - 10);
}

static int hex_byte(char *p, uint8_t b)
{
    p[0] = hex_digit(b >> 4);
    p[1] = hex_digit(b & 0x0F);

    return 2;
}

static int hex_uint16(char *p, uint16_t b)
{
    hex_byte(p, b >> 8);
    hex_byte(p + 2, b & 0xFF);

    return 4;
}

static char human_char(uint8_t c)
{
    return (c >= ' ' && c <= '~') ? (char) c : '.';
}

static void dump_buffer(const uint8_t *buffer, size_t len)
{
    char line[80];

    const uint8_t *p = buffer;

    size_t max = (len > 0xFFFF) ? 0xFFFF : len;

    for (size_t i = 0; i < max; i += 16) {

        char *q = line;

        q += hex_uint16(q, (uint16_t) i);
        *q++ = ' ';
        *q++ = ' ';

        size_t ll = (i + 16 > max) ? (max % 16) : 16;

        size_t j;
        for (j = 0; j < ll; j++) {
            q += hex_byte(q, p[i + j]);
            *q++ = ' ';
        }

        while (j++ < 16) {
            *q++ = ' ';
            *q++ = ' ';
            *q++ = ' ';
        }

        *q++ = ' ';

        for (j = 0; j < ll; j++) {
            *q++ = human_char(p[i + j]);
        }

        *q = '\0';

        printf("%s\n", line);
    }
}""".splitlines()


# ===--- Client emitter ---=== #

CLIENT_PRELUDE = r"""#include <stdio.h>
#include <stdlib.h>
#include <unistd.h>

/* Includes from psasim */
#include <client.h>
#include <util.h>
#include "psa_manifest/sid.h"
#include "psa_functions_codes.h"
#include "psa_sim_serialise.h"

/* Includes from mbedtls */
#include "mbedtls/version.h"
#include "psa/crypto.h"

#define CLIENT_PRINT(fmt, ...) \
    INFO("Client: " fmt, ##__VA_ARGS__)

static psa_handle_t handle = -1;

#if defined(MBEDTLS_PSA_CRYPTO_C)
#error "Error: MBEDTLS_PSA_CRYPTO_C must be disabled on client build"
#endif""".splitlines()

CLIENT_TRANSPORT = r"""
int psa_crypto_call(int function,
                    uint8_t *in_params, size_t in_params_len,
                    uint8_t **out_params, size_t *out_params_len)
{
    if (handle < 0) {
        fprintf(stderr, "NOT CONNECTED\n");
        return 0;
    }

    psa_invec invec;
    invec.base = in_params;
    invec.len = in_params_len;

    size_t max_receive = @CAPACITY@;
    uint8_t *receive = malloc(max_receive);
    if (receive == NULL) {
        fprintf(stderr, "FAILED to allocate %u bytes\n", (unsigned) max_receive);
        return 0;
    }

    size_t actual_received = 0;

    psa_outvec outvecs[2];
    outvecs[0].base = &actual_received;
    outvecs[0].len = sizeof(actual_received);
    outvecs[1].base = receive;
    outvecs[1].len = max_receive;

    psa_status_t status = psa_call(handle, function, &invec, 1, outvecs, 2);
    if (status != PSA_SUCCESS) {
        free(receive);
        return 0;
    }

    *out_params = receive;
    *out_params_len = actual_received;

    return 1;   // success
}""".replace("@CAPACITY@", str(CLIENT_RECEIVE_CAPACITY)).splitlines()

# Hand-written part of psa_crypto_init(): open the connection first.
CLIENT_CONNECT = r"""    char mbedtls_version[18];

    mbedtls_version_get_string_full(mbedtls_version);
    CLIENT_PRINT("%s", mbedtls_version);

    CLIENT_PRINT("My PID: %d", getpid());

    CLIENT_PRINT("PSA version: %u", psa_version(PSA_SID_CRYPTO_SID));
    handle = psa_connect(PSA_SID_CRYPTO_SID, 1);

    if (handle < 0) {
        CLIENT_PRINT("Couldn't connect %d", handle);
        return PSA_ERROR_COMMUNICATION_FAILURE;
    }""".splitlines()

CLIENT_TEARDOWN = r"""
void mbedtls_psa_crypto_free(void)
{
    /* Do not try to close a connection that was never started.*/
    if (handle == -1) {
        return;
    }

    CLIENT_PRINT("Closing handle");
    psa_close(handle);
    handle = -1;
}""".splitlines()


def _client_request_value(field: WireField) -> str:
    arg = field.argument
    if field.role == ROLE_BUFFER:
        return f"{arg.name}, {arg.length_name}"
    if field.role == ROLE_CAPACITY:
        return arg.length_name
    if arg.kind == KIND_SCALAR:
        return arg.name
    return f"*{arg.name}"


def _client_reply_call(field: WireField, ret: ReturnInfo) -> tuple[str, str]:
    if field.role == ROLE_RETURN:
        return f"psasim_deserialise_{field.encoding}", f"&{ret.local_name}"
    arg = field.argument
    if field.role == ROLE_BUFFER:
        return "psasim_deserialise_return_buffer", f"{arg.name}, {arg.length_name}"
    return f"psasim_deserialise_{field.encoding}", arg.name


def generate_client_wrapper(
    operation: OperationInfo,
    debug: bool = False,
    preamble: Sequence[str] = (),
) -> list[str]:
    """Render the client function for one operation.

    The function keeps the original signature, serialises the request
    layout, calls the server, and decodes the reply layout into the caller's
    output locations. Allocation, transport and decode failures all return
    the operation's error value; both buffers are freed on every path.

    Args:
        operation: Catalog entry to render.
        debug: Emit request/response hex dumps.
        preamble: Statements run before anything is allocated (used by
            psa_crypto_init to connect).
    """
    ret = operation.return_info
    reset = () if ret.is_void else (f"{ret.local_name} = {ret.default};",)
    out_of_memory = () if ret.is_void else (f"{ret.local_name} = {ret.alloc_failure};",)
    buffers = (
        CLocal("uint8_t *ser_params = NULL;", "free(ser_params);"),
        CLocal("uint8_t *ser_result = NULL;", "free(ser_result);"),
        CLocal("size_t result_length;"),
    )

    lines = ["", *format_signature(operation), "{"]
    lines.extend(f"    {local.declaration}" for local in buffers)
    if not ret.is_void:
        lines.append(f"    {ret.type_name} {ret.local_name} = {ret.default};")
    if preamble:
        lines.append("")
        lines.extend(preamble)
    if debug:
        lines.append("")
        lines.append(f'    printf("{operation.name}: client\\n");')

    request = request_fields(operation)
    lines.append("")
    lines.extend(
        _sum_lines(
            "needed",
            ["psasim_serialise_begin_needs()"]
            + [
                f"psasim_serialise_{field.encoding}_needs({_client_request_value(field)})"
                for field in request
            ],
        )
    )
    lines.append("")
    lines.append("    ser_params = malloc(needed);")
    lines.extend(_on_failure("ser_params == NULL", out_of_memory))
    lines.append("")
    lines.append("    uint8_t *pos = ser_params;")
    lines.append("    size_t remaining = needed;")
    lines.append("    int ok;")
    lines.extend(_ok_call("psasim_serialise_begin", "&pos, &remaining", failure=reset))
    for field in request:
        lines.extend(
            _ok_call(
                f"psasim_serialise_{field.encoding}",
                "&pos, &remaining",
                _client_request_value(field),
                failure=reset,
            )
        )

    if debug:
        lines.append("")
        lines.append('    printf("client sending %d:\\n", (int) (pos - ser_params));')
        lines.append("    dump_buffer(ser_params, (size_t) (pos - ser_params));")

    call = f"    ok = psa_crypto_call({operation.enum_name},"
    indent = " " * call.index("(")
    lines.append("")
    lines.append(call)
    lines.append(
        f"{indent} ser_params, (size_t) (pos - ser_params), &ser_result, &result_length);"
    )
    lines.extend(
        _on_failure(
            "!ok",
            [f'printf("{operation.enum_name} server call failed\\n");', *reset],
        )
    )

    if debug:
        lines.append("")
        lines.append('    printf("client receiving %d:\\n", (int) result_length);')
        lines.append("    dump_buffer(ser_result, result_length);")

    lines.append("")
    lines.append("    uint8_t *rpos = ser_result;")
    lines.append("    size_t rremain = result_length;")
    lines.extend(_ok_call("psasim_deserialise_begin", "&rpos, &rremain", failure=reset))
    for field in reply_fields(operation):
        function, target = _client_reply_call(field, ret)
        lines.extend(_ok_call(function, "&rpos, &rremain", target, failure=reset))

    lines.extend(_exit_block(buffers))
    if not ret.is_void:
        lines.append("")
        lines.append(f"    return {ret.local_name};")
    lines.append("}")
    return lines


def generate_client_source(catalog: OperationCatalog, debug: bool = False) -> list[str]:
    lines = list(CLIENT_PRELUDE)
    if debug:
        lines.extend(DEBUG_HELPERS)
    lines.extend(CLIENT_TRANSPORT)
    lines.extend(
        generate_client_wrapper(catalog.initializer, debug, preamble=CLIENT_CONNECT)
    )
    lines.extend(CLIENT_TEARDOWN)
    for operation in catalog.operations:
        if operation.is_initializer:
            continue
        lines.extend(generate_client_wrapper(operation, debug))
    return lines


# ===--- Server emitter ---=== #

SERVER_PRELUDE = r"""/* server implementations */

#include <stdio.h>
#include <stdlib.h>
#include <string.h>

#include <psa/crypto.h>

#include "psa_functions_codes.h"
#include "psa_sim_serialise.h"

#include "service.h"

#if !defined(MBEDTLS_PSA_CRYPTO_C)
#error "Error: MBEDTLS_PSA_CRYPTO_C must be enabled on server build"
#endif""".splitlines()

SERVER_TEARDOWN = r"""
void psa_crypto_close(void)
{
    psa_sim_serialize_reset();
}""".splitlines()


def _server_locals(operation: OperationInfo, mode: str) -> list[CLocal]:
    locals_ = []
    ret = operation.return_info
    if not ret.is_void:
        locals_.append(CLocal(f"{ret.type_name} {ret.local_name} = {ret.default};"))
    for arg in operation.arguments:
        if arg.is_buffer:
            locals_.append(CLocal(f"uint8_t *{arg.name} = NULL;", f"free({arg.name});"))
            locals_.append(CLocal(f"size_t {arg.length_name} = 0;"))
        elif arg.kind == KIND_OPERATION_STATE and mode == OPERATION_MODE_HANDLE:
            locals_.append(CLocal(f"{arg.type_name} *{arg.name} = NULL;"))
        else:
            locals_.append(CLocal(f"{arg.type_name} {arg.name};"))
    locals_.append(CLocal("uint8_t *result = NULL;", "free(result);"))
    locals_.append(CLocal("int ok = 0;"))
    return locals_


def _server_request_call(field: WireField, mode: str) -> tuple[str, str]:
    arg = field.argument
    if field.role == ROLE_BUFFER:
        return "psasim_deserialise_buffer", f"&{arg.name}, &{arg.length_name}"
    if field.role == ROLE_CAPACITY:
        return f"psasim_deserialise_{SIZE_TYPE}", f"&{arg.length_name}"
    if field.role == ROLE_OPERATION and mode == OPERATION_MODE_HANDLE:
        return f"psasim_server_deserialise_{field.encoding}", f"&{arg.name}"
    return f"psasim_deserialise_{field.encoding}", f"&{arg.name}"


def _server_reply_call(
    field: WireField, operation: OperationInfo, mode: str
) -> tuple[str, str, str]:
    """Return (serialise function, its value arguments, needs expression)."""
    if field.role == ROLE_RETURN:
        name = operation.return_info.local_name
        function = f"psasim_serialise_{field.encoding}"
        return function, name, f"{function}_needs({name})"
    arg = field.argument
    if field.role == ROLE_BUFFER:
        values = f"{arg.name}, {arg.length_name}"
        return "psasim_serialise_buffer", values, f"psasim_serialise_buffer_needs({values})"
    if field.role == ROLE_OPERATION and mode == OPERATION_MODE_HANDLE:
        function = f"psasim_server_serialise_{field.encoding}"
        completed = "1" if operation.is_terminal else "0"
        return function, f"{arg.name}, {completed}", f"{function}_needs({arg.name})"
    function = f"psasim_serialise_{field.encoding}"
    return function, arg.name, f"{function}_needs({arg.name})"


def _server_call_argument(arg: ArgumentInfo, mode: str) -> str:
    if arg.is_buffer:
        return f"{arg.name}, {arg.length_name}"
    if arg.kind == KIND_SCALAR:
        return arg.name
    if arg.kind == KIND_OPERATION_STATE and mode == OPERATION_MODE_HANDLE:
        return arg.name
    return f"&{arg.name}"


def _target_call(operation: OperationInfo, mode: str) -> list[str]:
    ret = operation.return_info
    head = f"    {operation.name}(" if ret.is_void else f"    {ret.local_name} = {operation.name}("
    arguments = [_server_call_argument(arg, mode) for arg in operation.arguments]
    lines = ["", "    // Now we call the actual target function", "", head]
    lines.extend(f"        {argument}," for argument in arguments[:-1])
    if arguments:
        lines.append(f"        {arguments[-1]}")
    lines.append("        );")
    return lines


def generate_server_wrapper(
    operation: OperationInfo,
    mode: str = OPERATION_MODE_HANDLE,
    debug: bool = False,
) -> list[str]:
    """Render `<name>_wrapper()` for one operation.

    Deserialises the request into locals, calls the real function with the
    original argument list and serialises the reply into a fresh buffer
    handed back through out_params. Returns 1 on success, 0 on failure.

    In handle mode operation state is looked up through the server's handle
    table and serialised back with a completed flag that is 1 exactly for
    terminal calls. In direct mode the state travels by value.
    """
    locals_ = _server_locals(operation, mode)
    lines = [
        "",
        "// Returns 1 for success, 0 for failure",
        f"int {operation.name}_wrapper(",
        "    uint8_t *in_params, size_t in_params_len,",
        "    uint8_t **out_params, size_t *out_params_len)",
        "{",
    ]
    lines.extend(f"    {local.declaration}" for local in locals_)

    output_only = [
        arg
        for arg in operation.arguments
        if arg.kind == KIND_PLAIN_POINTER and arg.is_output
    ]
    if output_only:
        lines.append("")
        lines.extend(
            f"    memset(&{arg.name}, 0, sizeof({arg.name}));" for arg in output_only
        )

    lines.append("")
    lines.append("    uint8_t *pos = in_params;")
    lines.append("    size_t remaining = in_params_len;")

    if debug:
        lines.append("")
        lines.append(f'    printf("{operation.name}: server\\n");')

    lines.extend(_ok_call("psasim_deserialise_begin", "&pos, &remaining"))
    for field in request_fields(operation):
        function, target = _server_request_call(field, mode)
        lines.extend(_ok_call(function, "&pos, &remaining", target))
        if field.role == ROLE_CAPACITY:
            arg = field.argument
            lines.append("")
            lines.append(f"    if ({arg.length_name} > 0) {{")
            lines.append(f"        {arg.name} = calloc({arg.length_name}, 1);")
            lines.append(f"        if ({arg.name} == NULL) {{")
            lines.append("            ok = 0;")
            lines.append("            goto exit;")
            lines.append("        }")
            lines.append("    }")

    lines.extend(_target_call(operation, mode))

    replies = [_server_reply_call(field, operation, mode) for field in reply_fields(operation)]
    lines.append("")
    lines.append("    // NOTE: Should really check there is no overflow as we go along.")
    lines.extend(
        _sum_lines(
            "result_size",
            ["psasim_serialise_begin_needs()"] + [needs for _, _, needs in replies],
        )
    )
    lines.append("")
    lines.append("    result = malloc(result_size);")
    lines.extend(_on_failure("result == NULL", ["ok = 0;"]))
    lines.append("")
    lines.append("    uint8_t *rpos = result;")
    lines.append("    size_t rremain = result_size;")
    lines.extend(_ok_call("psasim_serialise_begin", "&rpos, &rremain"))
    for function, values, _ in replies:
        lines.extend(_ok_call(function, "&rpos, &rremain", values))

    lines.append("")
    lines.append("    *out_params = result;")
    lines.append("    *out_params_len = result_size;")
    lines.append("    result = NULL;")

    lines.extend(_exit_block(locals_))
    lines.append("")
    lines.append("    return ok;")
    lines.append("}")
    return lines


def generate_dispatcher(catalog: OperationCatalog, debug: bool = False) -> list[str]:
    """Render psa_crypto_call(), the single server entry point.

    The envelope must carry exactly one input region and exactly two output
    regions: a size_t length field and the data area. A reply larger than
    the data area the client advertised aborts the server process.
    """
    lines = r"""
psa_status_t psa_crypto_call(psa_msg_t msg)
{
    int ok = 0;

    int func = msg.type;

    /* We only expect a single input buffer, with everything serialised in it */
    if (msg.in_size[0] == 0 || msg.in_size[1] != 0 ||
        msg.in_size[2] != 0 || msg.in_size[3] != 0) {
        return PSA_ERROR_INVALID_ARGUMENT;
    }

    /* We expect exactly 2 output buffers, one for size, the other for data */
    if (msg.out_size[0] != sizeof(size_t) || msg.out_size[1] == 0 ||
        msg.out_size[2] != 0 || msg.out_size[3] != 0) {
        return PSA_ERROR_INVALID_ARGUMENT;
    }

    uint8_t *in_params = NULL;
    size_t in_params_len = 0;
    uint8_t *out_params = NULL;
    size_t out_params_len = 0;

    in_params_len = msg.in_size[0];
    in_params = malloc(in_params_len);
    if (in_params == NULL) {
        return PSA_ERROR_INSUFFICIENT_MEMORY;
    }

    /* Read the bytes from the client */
    size_t actual = psa_read(msg.handle, 0, in_params, in_params_len);
    if (actual != in_params_len) {
        free(in_params);
        return PSA_ERROR_CORRUPTION_DETECTED;
    }""".splitlines()

    if debug:
        lines.append("")
        lines.append('    printf("server receiving %d:\\n", (int) in_params_len);')
        lines.append("    dump_buffer(in_params, in_params_len);")

    lines.append("")
    lines.append("    switch (func) {")
    for operation in catalog.operations:
        first_line = f"            ok = {operation.name}_wrapper(in_params, in_params_len,"
        indent = " " * (first_line.index("(") + 1)
        lines.append(f"        case {operation.enum_name}:")
        lines.append(first_line)
        lines.append(f"{indent}&out_params, &out_params_len);")
        lines.append("            break;")
    lines.append("    }")

    lines.extend(
        r"""
    free(in_params);

    if (out_params_len > msg.out_size[1]) {
        fprintf(stderr, "unable to write %zu bytes into buffer of %zu bytes\n",
                out_params_len, msg.out_size[1]);
        exit(1);
    }""".splitlines()
    )

    if debug:
        lines.append("")
        lines.append('    printf("server sending %d:\\n", (int) out_params_len);')
        lines.append("    dump_buffer(out_params, out_params_len);")

    lines.extend(
        r"""
    /* Write the exact amount of data we're returning */
    psa_write(msg.handle, 0, &out_params_len, sizeof(out_params_len));

    /* And write the data itself */
    if (out_params_len) {
        psa_write(msg.handle, 1, out_params, out_params_len);
    }

    free(out_params);

    return ok ? PSA_SUCCESS : PSA_ERROR_GENERIC_ERROR;
}""".splitlines()
    )
    return lines


def generate_server_source(
    catalog: OperationCatalog,
    mode: str = OPERATION_MODE_HANDLE,
    debug: bool = False,
) -> list[str]:
    lines = list(SERVER_PRELUDE)
    if debug:
        lines.extend(DEBUG_HELPERS)
    for operation in catalog.operations:
        lines.extend(generate_server_wrapper(operation, mode, debug))
    lines.extend(generate_dispatcher(catalog, debug))
    lines.extend(SERVER_TEARDOWN)
    return lines


# ===--- Discovery ---=== #


def filter_operations_by_text(
    codes: Sequence[OperationCode], filter_text: str
) -> list[OperationCode]:
    needle = filter_text.lower()
    return [code for code in codes if needle in code.name.lower()]


def format_argument_summary(operation: OperationInfo) -> str:
    parts = []
    for arg in operation.arguments:
        direction = "out" if arg.is_output else "in"
        parts.append(f"{arg.name}:{arg.kind}/{direction}")
    return ", ".join(parts)


def format_operations_table(
    codes: Sequence[OperationCode],
    catalog: OperationCatalog,
    sources: Sequence[str],
) -> str:
    """Return the complete --list-operations output as a single string.

    Output format:

        13 operations in psa/crypto.h, psa/crypto_extra.h:

            100  psa_crypto_init      ()
            101  psa_hash_abort       (operation:operation-state/out)
          ...

          Excluded: 3 (2 deny-list, 1 family)

    Filtering is NOT applied here; callers pre-filter the codes.
    """
    lines = [f"{len(codes)} operations in {', '.join(sources)}:", ""]
    name_width = max((len(code.name) for code in codes), default=0)
    for code in codes:
        operation = catalog.get(code.name)
        summary = format_argument_summary(operation) if operation else ""
        lines.append(f"  {code.value:>5}  {code.name.ljust(name_width)}  ({summary})")

    if catalog.excluded:
        counts: dict[str, int] = {}
        for entry in catalog.excluded:
            counts[entry.reason] = counts.get(entry.reason, 0) + 1
        detail = ", ".join(f"{count} {reason}" for reason, count in sorted(counts.items()))
        lines.append("")
        lines.append(f"  Excluded: {len(catalog.excluded)} ({detail})")

    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    catalog, _scan = load_catalog(source_paths(config))
    codes = assign_operation_codes(catalog)
    if config.filter_text is not None:
        codes = tuple(filter_operations_by_text(codes, config.filter_text))
    print(format_operations_table(codes, catalog, config.headers), end="")


# ===--- Artifact writer ---=== #

FILE_FUNCTION_CODES: str = "psa_functions_codes.h"
FILE_CLIENT: str = "psa_sim_crypto_client.c"
FILE_SERVER: str = "psa_sim_crypto_server.c"

ARTIFACT_ORDER: tuple[str, ...] = (FILE_FUNCTION_CODES, FILE_CLIENT, FILE_SERVER)
"""Write order of the generated files. The code table comes first since
both translation units include it."""


@dataclass(frozen=True)
class WriteConfig:
    """Shared generation metadata embedded in every file preamble.

    Attributes:
        sources: Header paths the catalog was read from, relative to the
            include directory, e.g. ("psa/crypto.h", "psa/crypto_extra.h").
        debug: True when tracing code is generated.
        operation_mode: "handle" or "direct".
    """

    sources: tuple[str, ...]
    debug: bool = False
    operation_mode: str = OPERATION_MODE_HANDLE


@dataclass(frozen=True)
class ArtifactSpec:
    """Complete input for one generated C file.

    Attributes:
        filename: Output filename, e.g. "psa_sim_crypto_client.c".
        content_lines: Generated C source lines without the file header.
            Each string is one line without a trailing newline.
    """

    filename: str
    content_lines: tuple[str, ...]


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing a single generated file.

    Attributes:
        filename: Filename written.
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


@dataclass(frozen=True)
class PackageWriteResult:
    output_dir: Path
    files: tuple[FileWriteResult, ...]

    @property
    def total_lines(self) -> int:
        """Sum of line_count across all written files."""
        return sum(f.line_count for f in self.files)


def format_file_header(config: WriteConfig) -> list[str]:
    """Return the comment block at the top of every generated file.

    Output format:
        /* THIS FILE WAS AUTO-GENERATED BY psasim-stubgen. DO NOT EDIT!! */

        /*
         * Sources: psa/crypto.h, psa/crypto_extra.h
         * Operation state: handle
         * Tracing: enabled              <- only with debug
         */

    No timestamps or absolute paths, so identical input gives identical files.

    Raises:
        ValueError: If config.sources is empty.
    """
    if not config.sources:
        raise ValueError("sources must not be empty")

    lines = [
        "/* THIS FILE WAS AUTO-GENERATED BY psasim-stubgen. DO NOT EDIT!! */",
        "",
        "/*",
        f" * Sources: {', '.join(config.sources)}",
        f" * Operation state: {config.operation_mode}",
    ]
    if config.debug:
        lines.append(" * Tracing: enabled")
    lines.append(" */")
    return lines


def assemble_artifact_source(config: WriteConfig, spec: ArtifactSpec) -> str:
    """Assemble header and content of one generated file, newline-terminated.

    Raises:
        ValueError: If spec.filename is empty or not a .c/.h file.
    """
    if not spec.filename or not spec.filename.endswith((".c", ".h")):
        raise ValueError(
            f"spec.filename must be non-empty and end with '.c' or '.h', "
            f"got {spec.filename!r}"
        )

    parts: list[str] = list(format_file_header(config))
    if spec.content_lines:
        parts.append("")
        parts.extend(spec.content_lines)
    return "\n".join(parts) + "\n"


def write_artifact(
    output_dir: Path, config: WriteConfig, spec: ArtifactSpec
) -> FileWriteResult:
    """Write one generated file, creating output_dir if needed.

    Raises:
        ValueError: Propagated from assemble_artifact_source.
        OSError: Propagated directly if the filesystem write fails.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    content = assemble_artifact_source(config, spec)
    file_path = output_dir / spec.filename
    file_path.write_text(content, encoding="utf-8")
    resolved = file_path.resolve()
    return FileWriteResult(
        filename=spec.filename,
        path=resolved,
        line_count=content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


def write_artifacts(
    output_dir: Path,
    config: WriteConfig,
    specs: Sequence[ArtifactSpec],
) -> PackageWriteResult:
    files = [write_artifact(output_dir, config, spec) for spec in specs]
    return PackageWriteResult(output_dir=Path(output_dir), files=tuple(files))


def build_artifact_specs(
    catalog: OperationCatalog,
    codes: Sequence[OperationCode],
    config: WriteConfig,
) -> tuple[ArtifactSpec, ...]:
    contents = {
        FILE_FUNCTION_CODES: generate_function_codes(codes),
        FILE_CLIENT: generate_client_source(catalog, config.debug),
        FILE_SERVER: generate_server_source(catalog, config.operation_mode, config.debug),
    }
    return tuple(
        ArtifactSpec(filename=name, content_lines=tuple(contents[name]))
        for name in ARTIFACT_ORDER
    )


# ===--- Generation pipeline ---=== #


def run_generate(config: GenerateConfig) -> PackageWriteResult:
    """Run reader -> scanner -> catalog -> emitters -> writer for one config.

    Raises:
        GenerationError: Any fatal parse, classification or compatibility error.
        OSError: Header not readable or filesystem write failure.
    """
    paths = source_paths(config)
    print(f"Parsing: {', '.join(str(path) for path in paths)}")
    lines = read_sources(paths)
    scan = scan_declarations(lines)
    print(f"  Sources: {len(lines)} logical lines, {len(scan.prototypes)} prototypes")
    for line in scan.unparsed:
        print(f"  NOT PARSED: {line}")

    catalog = build_catalog(scan.prototypes)
    print(
        f"  Catalog: {len(catalog.operations)} operations, "
        f"{len(catalog.excluded)} excluded"
    )

    codes = assign_operation_codes(catalog)
    if config.previous_codes is not None:
        check_code_compatibility(config.previous_codes, codes)
        print(f"  Codes: compatible with {config.previous_codes}")

    write_config = WriteConfig(
        sources=config.headers,
        debug=config.debug,
        operation_mode=config.operation_mode,
    )
    specs = build_artifact_specs(catalog, codes, write_config)
    result = write_artifacts(config.output_dir, write_config, specs)

    print_generation_summary(build_generation_summary(write_config, catalog, scan, result))
    return result


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    """Complete, immutable data for the post-generation console report.

    Attributes:
        source_label: Comma-separated header list.
        output_dir: Output directory as string.
        operation_mode: "handle" or "direct".
        operation_count: Operations in the catalog (initializer included).
        excluded: (reason, count) pairs in reason order.
        unparsed_count: Lines reported as NOT PARSED.
        files: Ordered write results.
    """

    source_label: str
    output_dir: str
    operation_mode: str
    operation_count: int
    excluded: tuple[tuple[str, int], ...]
    unparsed_count: int
    files: tuple[FileWriteResult, ...]


def build_generation_summary(
    write_config: WriteConfig,
    catalog: OperationCatalog,
    scan: ScanResult,
    write_result: PackageWriteResult,
) -> GenerationSummary:
    counts: dict[str, int] = {}
    for entry in catalog.excluded:
        counts[entry.reason] = counts.get(entry.reason, 0) + 1
    return GenerationSummary(
        source_label=", ".join(write_config.sources),
        output_dir=str(write_result.output_dir),
        operation_mode=write_config.operation_mode,
        operation_count=len(catalog.operations),
        excluded=tuple(sorted(counts.items())),
        unparsed_count=len(scan.unparsed),
        files=write_result.files,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary as the console report, newline-terminated."""
    excluded_total = sum(count for _, count in summary.excluded)

    lines: list[str] = []
    lines.append("psasim stubs generated:")
    lines.append("")
    lines.append(f"  Sources:    {summary.source_label}")
    lines.append(f"  Output:     {summary.output_dir}")
    lines.append(f"  Mode:       {summary.operation_mode}")
    lines.append("")
    lines.append("  Operations:")
    lines.append(f"    {'Wrapped:':<12}{summary.operation_count:>6}")
    excluded_row = f"    {'Excluded:':<12}{excluded_total:>6}"
    if summary.excluded:
        detail = ", ".join(f"{count} {reason}" for reason, count in summary.excluded)
        excluded_row += f"  ({detail})"
    lines.append(excluded_row)
    lines.append(f"    {'Not parsed:':<12}{summary.unparsed_count:>6}")

    lines.append("")
    lines.append("  Files written:")
    for file_result in summary.files:
        line_str = f"{file_result.line_count:>6,} lines"
        lines.append(f"    {file_result.filename:<28} {line_str}")

    total_lines = sum(f.line_count for f in summary.files)
    lines.append("")
    lines.append(f"  Total: {total_lines:,} lines across {len(summary.files)} files")
    lines.append("")

    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main generation ---=== #


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
        else:
            run_generate(config)
    except GenerationError as err:
        print(f"Generation error [{err.code}]: {err.message}")
        if err.context:
            print(err.context)
        raise SystemExit(1) from err
    except OSError as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
