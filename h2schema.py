# /// script
# requires-python = ">= 3.10"
# dependencies = [
#  "pyyaml",
#  "libclang",
#  "type_enforced",
# ]
# ///

__version__ = "0.1.0"

from dataclasses import dataclass
from functools import cache
import ctypes
import json
import math
import sys
import clang.cindex
import type_enforced
import yaml
import os
import subprocess
import re
import argparse


#
#   | | _|_ o |  _
#   |_|  |_ | | _>
#
class classproperty(property):
    def __get__(self, owner_self, owner_cls):
        return self.fget(owner_cls)


class H2SchemaError(Exception):
    pass


@type_enforced.Enforcer
def h2schema_warning(c: clang.cindex.Cursor, msg: str):
    l = c.location
    prefix = f"h2schema diagnostic: {l.file}:{l.line}:{l.column}"
    print(
        f"{prefix}: Warning: {msg}",
        file=sys.stderr,
    )


class SystemIncludes:
    # Our libclang version may differ from the "normal" compiler used by the system.
    # This means we may lack the `isystem` headers that the user expects.
    # We use the `$CC` environment variable to detect these headers and add them to our include path.
    @classproperty
    def paths(cls):
        if not (cc := os.getenv("CC")):  # pragma: no cover
            return []

        text = subprocess.check_output(
            f"{cc} -E -Wp,-v -xc /dev/null",
            shell=True,
            text=True,
            stderr=subprocess.STDOUT,
        )
        start_string = "#include <...> search starts here:"
        start_index = text.find(start_string) + len(start_string)
        end_index = text.find("End of search list.", start_index)
        return text[start_index:end_index].split()


@type_enforced.Enforcer
def check_diagnostic(tu: clang.cindex.TranslationUnit, strict: bool):
    error = False
    for diagnostic in tu.diagnostics:
        print(f"clang diagnostic: {diagnostic.format()}", file=sys.stderr)
        error |= diagnostic.severity >= clang.cindex.Diagnostic.Error
    if strict and error:
        raise H2SchemaError(f"{tu.spelling}: clang reported errors")


class HeaderFilter:
    """Decide which source locations belong to the headers we describe.

    Declarations without a file (compiler builtins) are always rejected.
    System headers are rejected unless `include_system_header` is set.
    `pattern` is searched in the basename of the declaring file.
    """

    def __init__(self, pattern=".*", include_system_header=False):
        self.pattern = re.compile(pattern)
        self.include_system_header = include_system_header

    def __call__(self, location):
        if not location.file:
            return False
        if location.is_in_system_header and not self.include_system_header:
            return False
        return bool(self.pattern.search(os.path.basename(location.file.name)))


#    _ ___                   _
#   /   |  ._   _|  _       |_   _|_  _  ._   _ o  _  ._
#   \_ _|_ | | (_| (/_ ><   |_ >< |_ (/_ | | _> | (_) | |
#
def attach_to(target):
    """
    Decorator that attaches a function or descriptor (e.g. property)
    to a target class.
    Bind `_FOO` to `target.FOO`

    Example:
        @attach_to(clang.cindex.Cursor)
        def _my_method(self): ...
    """

    def decorator(obj):
        try:
            attr_name = obj.__name__
        except AttributeError:
            attr_name = obj.fget.__name__
        attr_name = re.sub(r"^_", "", attr_name)
        setattr(target, attr_name, obj)
        return obj

    return decorator


# enum CXEvalResultKind
CXEval_Int = 1
CXEval_Float = 2
CXEval_StrLiteral = 4


@cache
def _eval_lib():
    # The python bindings do not expose the `clang_Cursor_Evaluate` family.
    lib = clang.cindex.conf.lib
    lib.clang_Cursor_Evaluate.restype = ctypes.c_void_p
    lib.clang_Cursor_Evaluate.argtypes = [clang.cindex.Cursor]
    lib.clang_EvalResult_getKind.restype = ctypes.c_int
    lib.clang_EvalResult_getKind.argtypes = [ctypes.c_void_p]
    lib.clang_EvalResult_isUnsignedInt.restype = ctypes.c_uint
    lib.clang_EvalResult_isUnsignedInt.argtypes = [ctypes.c_void_p]
    lib.clang_EvalResult_getAsUnsigned.restype = ctypes.c_ulonglong
    lib.clang_EvalResult_getAsUnsigned.argtypes = [ctypes.c_void_p]
    lib.clang_EvalResult_getAsLongLong.restype = ctypes.c_longlong
    lib.clang_EvalResult_getAsLongLong.argtypes = [ctypes.c_void_p]
    lib.clang_EvalResult_getAsDouble.restype = ctypes.c_double
    lib.clang_EvalResult_getAsDouble.argtypes = [ctypes.c_void_p]
    lib.clang_EvalResult_getAsStr.restype = ctypes.c_char_p
    lib.clang_EvalResult_getAsStr.argtypes = [ctypes.c_void_p]
    lib.clang_EvalResult_dispose.restype = None
    lib.clang_EvalResult_dispose.argtypes = [ctypes.c_void_p]
    return lib


@attach_to(clang.cindex.Cursor)
def _evaluate(self):
    """Statically evaluate the initializer of a variable.

    Return an int, a float or a str, or None when libclang cannot fold
    the initializer into one of those.
    """
    lib = _eval_lib()
    result = lib.clang_Cursor_Evaluate(self)
    if not result:
        return None

    try:
        kind = lib.clang_EvalResult_getKind(result)
        if kind == CXEval_Int:
            if lib.clang_EvalResult_isUnsignedInt(result):
                return lib.clang_EvalResult_getAsUnsigned(result)
            return lib.clang_EvalResult_getAsLongLong(result)
        if kind == CXEval_Float:
            return lib.clang_EvalResult_getAsDouble(result)
        if kind == CXEval_StrLiteral:
            # Literals are raw bytes, they are not required to be UTF-8
            return lib.clang_EvalResult_getAsStr(result).decode(
                "utf-8", errors="backslashreplace"
            )
        # ObjC/CF strings and anything else
        return None
    finally:
        lib.clang_EvalResult_dispose(result)


@attach_to(clang.cindex.Cursor)
def _is_anonymous2(self):
    # - Nested unnamed records: `is_anonymous()` returns True.
    # - `typedef struct { int a; } A_t;` is named by its typedef and is kept as `A_t`.
    # - Older libclang spell unnamed C++ records `Foo::(anonymous struct at ...)`.
    if self.is_anonymous():
        return True
    name = type_display_name(self.type)
    return "(anonymous" in name or "(unnamed" in name


@attach_to(clang.cindex.Cursor)
def _is_forward_declaration(self):
    # https://joshpeterson.github.io/blog/2017/identifying-a-forward-declaration-with-libclang/
    # Need two tests, as cursors cannot be compared to None
    return self.get_definition() is None or self.get_definition() != self


@attach_to(clang.cindex.Cursor)
@property
def _file_name(self):
    f = self.location.file
    return f.name if f else ""


def find_declarations(cursor, header_filter):
    """Pre-order walk over every declaration located in an interesting header."""
    for child in cursor.get_children():
        if not header_filter(child.location):
            continue
        yield child
        yield from find_declarations(child, header_filter)


#    __
#   (_   _ |_   _  ._ _   _.
#   __) (_ | | (/_ | | | (_|
#
@dataclass(frozen=True)
class Primitive:
    name: str

    def to_dict(self):
        return {"kind": "Primitive", "name": self.name}


@dataclass(frozen=True)
class Pointer:
    pointee: object

    def to_dict(self):
        return {"kind": "Pointer", "pointee": self.pointee.to_dict()}


@dataclass(frozen=True)
class Function:
    arg_types: tuple
    return_type: object
    variadic: bool = False

    def to_dict(self):
        d = {
            "kind": "Function",
            "argTypes": [t.to_dict() for t in self.arg_types],
            "returnTypes": self.return_type.to_dict(),
        }
        # Only present when set
        if self.variadic:
            d["variadic"] = True
        return d


@dataclass(frozen=True)
class StructRef:
    name: str

    def to_dict(self):
        return {"kind": "Struct", "name": self.name}


@dataclass(frozen=True)
class EnumRef:
    name: str

    def to_dict(self):
        return {"kind": "Enum", "name": self.name}


@dataclass(frozen=True)
class Array:
    element_type: object
    size: int

    def to_dict(self):
        return {
            "kind": "Array",
            "elementType": self.element_type.to_dict(),
            "size": self.size,
        }


@dataclass(frozen=True)
class Unknown:
    id: int
    name: str

    def to_dict(self):
        return {"kind": "Unknown", "id": self.id, "name": self.name}


def iter_nodes(node):
    """Yield `node` and every schema node embedded in it by value."""
    yield node
    match node:
        case Pointer(pointee=p):
            yield from iter_nodes(p)
        case Function(arg_types=args, return_type=r):
            for a in args:
                yield from iter_nodes(a)
            yield from iter_nodes(r)
        case Array(element_type=e):
            yield from iter_nodes(e)


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    size: int
    offset: int
    type: object
    bit_width: int | None = None

    def to_dict(self):
        d = {
            "name": self.name,
            "size": self.size,
            "offset": self.offset,
            "type": self.type.to_dict(),
        }
        if self.bit_width is not None:
            d["bitWidth"] = self.bit_width
        return d


@dataclass(frozen=True)
class StructDescriptor:
    name: str
    size: int
    file_name: str
    fields: tuple = ()

    def to_dict(self):
        return {
            "size": self.size,
            "fileName": self.file_name,
            "fields": [f.to_dict() for f in self.fields],
        }


@dataclass(frozen=True)
class FunctionDescriptor:
    type: Function
    file_name: str

    def to_dict(self):
        d = self.type.to_dict()
        del d["kind"]
        return d | {"fileName": self.file_name}


@dataclass(frozen=True)
class ConstantDescriptor:
    type: object
    value: int | float | str
    file_name: str

    def to_dict(self):
        return {
            "type": self.type.to_dict(),
            # JSON has no inf or nan
            "value": None
            if isinstance(self.value, float) and not math.isfinite(self.value)
            else self.value,
            "fileName": self.file_name,
        }


#    _                ___
#   |_) _. ._ _  _     |    ._   _
#   |  (_| | _> (/_    | \/ |_) (/_
#                        /  |
PRIMITIVE_TYPES = {
    clang.cindex.TypeKind.VOID: "void",
    clang.cindex.TypeKind.BOOL: "bool",
    # Plain `char` is spelled after the platform signedness
    clang.cindex.TypeKind.CHAR_U: "unsigned char",
    clang.cindex.TypeKind.UCHAR: "unsigned char",
    clang.cindex.TypeKind.USHORT: "unsigned short",
    clang.cindex.TypeKind.UINT: "unsigned int",
    clang.cindex.TypeKind.ULONG: "unsigned long",
    clang.cindex.TypeKind.ULONGLONG: "unsigned long long",
    clang.cindex.TypeKind.UINT128: "unsigned __int128",
    clang.cindex.TypeKind.CHAR_S: "signed char",
    clang.cindex.TypeKind.SCHAR: "signed char",
    clang.cindex.TypeKind.SHORT: "signed short",
    clang.cindex.TypeKind.INT: "signed int",
    clang.cindex.TypeKind.LONG: "signed long",
    clang.cindex.TypeKind.LONGLONG: "signed long long",
    clang.cindex.TypeKind.INT128: "signed __int128",
    clang.cindex.TypeKind.WCHAR: "wchar_t",
    clang.cindex.TypeKind.CHAR16: "char16_t",
    clang.cindex.TypeKind.CHAR32: "char32_t",
    clang.cindex.TypeKind.HALF: "half",
    clang.cindex.TypeKind.FLOAT: "float",
    clang.cindex.TypeKind.DOUBLE: "double",
    clang.cindex.TypeKind.LONGDOUBLE: "long double",
    clang.cindex.TypeKind.FLOAT128: "__float128",
    clang.cindex.TypeKind.NULLPTR: "nullptr_t",
}


@type_enforced.Enforcer
def type_display_name(t: clang.cindex.Type):
    # The display name keeps template arguments, fall back to the type spelling
    # when the declaration has none.
    return t.get_declaration().displayname or t.spelling


@type_enforced.Enforcer
def dump_type(t: clang.cindex.Type):
    match k := t.kind:
        case _ if name := PRIMITIVE_TYPES.get(k):
            return Primitive(name)
        case clang.cindex.TypeKind.POINTER:
            return Pointer(dump_type(t.get_pointee()))
        case clang.cindex.TypeKind.FUNCTIONPROTO:
            return Function(
                tuple(dump_type(a) for a in t.argument_types()),
                dump_type(t.get_result()),
                t.is_function_variadic(),
            )
        case clang.cindex.TypeKind.FUNCTIONNOPROTO:
            return Function((), dump_type(t.get_result()))
        case clang.cindex.TypeKind.RECORD:
            # Reference by name only, members live in `structs`
            return StructRef(type_display_name(t.get_declaration().type))
        case clang.cindex.TypeKind.ENUM:
            return EnumRef(type_display_name(t))
        case clang.cindex.TypeKind.CONSTANTARRAY:
            return Array(dump_type(t.element_type), t.element_count)
        case _:
            return Unknown(k.value, k.spelling)


#    _                 _
#   |_) _. ._ _  _    | \  _   _ |
#   |  (_| | _> (/_   |_/ (/_ (_ |
#
class Document:
    """Output of one traversal: `structs`, `vars` (functions) and `constants`.

    Every partition is keyed by name with insert-or-replace semantics.
    """

    def __init__(self):
        self.structs = {}
        self.vars = {}
        self.constants = {}

    def add_struct(self, d):
        self.structs[d.name] = d

    def add_function(self, name, d):
        self.vars[name] = d

    def add_constant(self, name, d):
        self.constants[name] = d

    def to_dict(self):
        return {
            "structs": {k: v.to_dict() for k, v in self.structs.items()},
            "vars": {k: v.to_dict() for k, v in self.vars.items()},
            "constants": {k: v.to_dict() for k, v in self.constants.items()},
        }

    def dump(self, fmt="json"):
        match fmt:
            case "json":
                return json.dumps(self.to_dict(), indent=2, allow_nan=False) + "\n"
            case "yaml":
                return yaml.dump(self.to_dict(), Dumper=yaml.CDumper, sort_keys=False)
            case _:
                raise H2SchemaError(f"unknown output format: {fmt}")


@type_enforced.Enforcer
def dump_cursor_type(c: clang.cindex.Cursor):
    node = dump_type(c.type.get_canonical())
    for n in iter_nodes(node):
        if isinstance(n, Unknown):
            h2schema_warning(
                c, f"`{c.spelling}` uses unsupported type kind `{n.name}`."
            )
    return node


@type_enforced.Enforcer
def collect_fields(c: clang.cindex.Cursor):
    def parse_field_decl(f: clang.cindex.Cursor):
        return FieldDescriptor(
            name=f.spelling,
            size=f.type.get_size(),
            # Bit-fields narrower than a byte are floored to their first byte
            offset=f.get_field_offsetof() // 8,
            type=dump_cursor_type(f),
            bit_width=f.get_bitfield_width() if f.is_bitfield() else None,
        )

    return tuple(
        parse_field_decl(f)
        for f in c.get_children()
        if f.kind == clang.cindex.CursorKind.FIELD_DECL
    )


@type_enforced.Enforcer
def parse_struct_decl(c: clang.cindex.Cursor, doc: Document):
    if c.is_anonymous2() or c.is_forward_declaration():
        return

    doc.add_struct(
        StructDescriptor(
            name=type_display_name(c.type),
            size=c.type.get_size(),
            file_name=c.file_name,
            fields=collect_fields(c),
        )
    )


@type_enforced.Enforcer
def parse_function_decl(c: clang.cindex.Cursor, doc: Document):
    doc.add_function(c.spelling, FunctionDescriptor(dump_cursor_type(c), c.file_name))


@type_enforced.Enforcer
def parse_enum_constant_decl(c: clang.cindex.Cursor, doc: Document):
    doc.add_constant(
        c.spelling, ConstantDescriptor(dump_cursor_type(c), c.enum_value, c.file_name)
    )


@type_enforced.Enforcer
def parse_var_decl(c: clang.cindex.Cursor, doc: Document):
    # Not a compile-time constant: keep whatever was already recorded
    if (value := c.evaluate()) is None:
        return
    doc.add_constant(
        c.spelling, ConstantDescriptor(dump_cursor_type(c), value, c.file_name)
    )


@type_enforced.Enforcer
def parse_decl(c: clang.cindex.Cursor, doc: Document):
    match c.kind:
        case clang.cindex.CursorKind.STRUCT_DECL | clang.cindex.CursorKind.CLASS_DECL:
            parse_struct_decl(c, doc)
        case clang.cindex.CursorKind.FUNCTION_DECL:
            parse_function_decl(c, doc)
        case clang.cindex.CursorKind.ENUM_CONSTANT_DECL:
            parse_enum_constant_decl(c, doc)
        case clang.cindex.CursorKind.VAR_DECL:
            parse_var_decl(c, doc)
        case _:
            pass


#   ___
#    | ._ _. ._   _ |  _. _|_ o  _  ._    | | ._  o _|_
#    | | (_| | | _> | (_|  |_ | (_) | |   |_| | | |  |_
#
def parse_translation_unit(t, header_filter=None):
    if t is None or t.kind != clang.cindex.CursorKind.TRANSLATION_UNIT:
        raise H2SchemaError("not a translation unit")

    if header_filter is None:
        header_filter = HeaderFilter()

    doc = Document()
    for c in find_declarations(t, header_filter):
        parse_decl(c, doc)
    return doc


#
#   |\/|  _. o ._
#   |  | (_| | | |
#
def h2schema(
    file,
    *,
    clang_args=[],
    unsaved_files=None,
    pattern=".*",
    include_system_header=False,
    strict=False,
    fmt="json",
):
    if file == "-":
        file = "<stdin>"
        unsaved_files = [(file, sys.stdin.buffer.read())]

    system_args = [f"-I{p}" for p in SystemIncludes.paths]
    try:
        tu = clang.cindex.Index.create().parse(
            file,
            args=clang_args + system_args,
            unsaved_files=unsaved_files,
        )
    except clang.cindex.TranslationUnitLoadError as e:
        raise H2SchemaError(f"{file}: unable to parse translation unit") from e

    check_diagnostic(tu, strict)
    doc = parse_translation_unit(
        tu.cursor, HeaderFilter(pattern, include_system_header)
    )
    return doc.dump(fmt)


def split_clang_args(argv):
    """
    Extracts -Wc,foo style options into clang_args,
    handling -Wc,--startgroup ... -Wc,--endgroup as well.
    Returns: (filtered_argv, clang_args)
    """
    d = {"filtered_argv": [], "clang_argv": []}
    inside_group = False
    token = "-Wc,"
    for arg in argv:
        match arg.split(token):
            case [n]:  # nothing after -Wc,
                d["clang_argv" if inside_group else "filtered_argv"].append(n)
            case [n, "--startgroup"]:
                inside_group = True
            case [n, "--endgroup"]:
                inside_group = False
            case [n, *rest]:
                d["clang_argv"].extend(rest)
    return d


def parse_args(argv):
    parser = argparse.ArgumentParser()

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "--filter-header",
        dest="pattern",
        default=".*",
        metavar="REGEX",
        help="Only process headers matching the regex (default: .*).",
    )
    parser.add_argument(
        "--include-system-header",
        action="store_true",
        help="Also describe declarations coming from system headers.",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail when clang reports an error diagnostic.",
    )
    parser.add_argument(
        "--format",
        dest="fmt",
        choices=("json", "yaml"),
        default="json",
        help="Output format (default: json).",
    )
    parser.add_argument(
        "-o",
        "--output",
        default="clang-c.json",
        metavar="FILE",
        help="File the document is written to (default: clang-c.json).",
    )
    parser.add_argument(
        "--no-output-file",
        dest="output",
        action="store_const",
        const=None,
        help="Only print the document on stdout.",
    )

    parser.add_argument("file", help="File to process or '-' for stdin")

    d = split_clang_args(argv)

    args = parser.parse_args(d["filtered_argv"])
    args.clang_args = d["clang_argv"]
    return args


# Main function used by `h2schema` binary generated by pyproject.toml
def main(args=sys.argv[1:]):
    parsed_args = vars(parse_args(args))
    output = parsed_args.pop("output")
    try:
        text = h2schema(**parsed_args)
    except H2SchemaError as e:
        print(f"h2schema: error: {e}", file=sys.stderr)
        sys.exit(1)

    if output:
        with open(output, "w") as f:
            f.write(text)
    print(text, end="")


if __name__ == "__main__":  # pragma: no cover
    main()
