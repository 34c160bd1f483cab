#!/usr/bin/env python3
"""Convert a binary file to a C array declaration."""

import argparse
import bz2
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Protocol, TextIO

WIDTHS = (8, 16, 32)
BYTES_PER_ROW = 16
HEADER_EXTENSION = ".h"
DEFAULT_LABEL = "$*"
BOILERPLATE = "/* generated by Bin2C */\n#include <stdint.h>"

# bzlib status codes
BZ_PARAM_ERROR = -2
BZ_MEM_ERROR = -3

USAGE_HINT = "Use 'bin2c --help' for usage information."


class Bin2CError(Exception):
    pass


class ArgumentError(Bin2CError):
    pass


class ConfigError(Bin2CError):
    pass


class IoError(Bin2CError):
    pass


class AllocationError(Bin2CError):
    pass


class CompressionError(Bin2CError):
    def __init__(self, status: int) -> None:
        super().__init__(f"Failed to compress data: error {status}.")
        self.status = status


def check_width(bits: int) -> None:
    if bits not in WIDTHS:
        raise ConfigError("Invalid bit size (must be 8, 16 or 32).")


def default_output(path: Path) -> Path:
    if not path.name:
        raise ArgumentError(f"Cannot derive an output name from {path}. " + USAGE_HINT)
    return path.with_suffix(HEADER_EXTENSION)


def expand_label(label: str, path: Path) -> str:
    """Replace ``$*`` with the base filename and ``$@`` with the full filename."""
    names = {"*": path.stem, "@": path.name}
    return re.sub(r"\$([*@])", lambda m: names[m.group(1)], label)


def sanitize_identifier(name: str) -> str:
    if not name:
        raise ArgumentError("Empty symbol name. " + USAGE_HINT)
    name = re.sub(r"[^A-Za-z0-9_]", "_", name)
    if name[0].isdigit():
        name = "_" + name[1:]
    return name


@dataclass(frozen=True)
class Config:
    input: Path
    output: Path
    label: str = DEFAULT_LABEL
    bits: int = 8
    append: bool = False
    use_macro: bool = False
    mutable: bool = False
    text: bool = False
    zero_terminate: bool = False
    compress: bool = False

    def __post_init__(self) -> None:
        check_width(self.bits)
        if self.input.resolve() == self.output.resolve():
            raise ArgumentError(f"Input and output are the same file: {self.input}")
        sanitize_identifier(expand_label(self.label, self.input))

    @property
    def symbol(self) -> str:
        return sanitize_identifier(expand_label(self.label, self.input))


@dataclass(frozen=True)
class Result:
    output: Path
    symbol: str
    array_size: int
    data_size: int
    uncompressed_size: int | None = None


class Compressor(Protocol):
    def compress(self, data: bytes) -> bytes: ...


class Bz2Compressor:
    def __init__(self, level: int = 9) -> None:
        self.level = level

    def compress(self, data: bytes) -> bytes:
        try:
            return bz2.compress(data, self.level)
        except MemoryError as e:
            raise CompressionError(BZ_MEM_ERROR) from e
        except ValueError as e:
            raise CompressionError(BZ_PARAM_ERROR) from e


class WordPacker:
    """Iterate over ``data`` as little-endian words of ``width`` bits.

    A trailing group shorter than a full word is yielded with its high bits
    zero. Every call to ``iter()`` starts over from the first byte.
    """

    def __init__(self, data: bytes, width: int) -> None:
        check_width(width)
        self.data = data
        self.width = width

    @property
    def word_size(self) -> int:
        return self.width // 8

    def __len__(self) -> int:
        return -(-len(self.data) // self.word_size)

    def __iter__(self) -> Iterator[int]:
        word = 0
        bits = 0
        for byte in self.data:
            word |= byte << bits
            bits += 8
            if bits == self.width:
                yield word
                word = bits = 0
        if bits:
            yield word


def load_input(path: Path, text: bool = False, zero_terminate: bool = False) -> bytes:
    try:
        with path.open("rb") as f:
            data = f.read()
        if text:
            data = data.replace(b"\r\n", b"\n")
        if zero_terminate:
            data += b"\0"
    except MemoryError as e:
        raise AllocationError("Memory allocation error.") from e
    except OSError as e:
        raise IoError(f"Failed to open {path} for reading.") from e
    return data


def size_declaration(name: str, value: int, use_macro: bool) -> str:
    if use_macro:
        return f"#define {name} {value}\n"
    return f"const unsigned int {name} = {value};\n"


def write_declaration(
    stream: TextIO,
    words: WordPacker,
    symbol: str,
    *,
    mutable: bool = False,
    use_macro: bool = False,
    uncompressed_size: int | None = None,
    boilerplate: bool = True,
) -> int:
    """Write the array and size declarations, returning the element count."""
    if boilerplate:
        stream.write(BOILERPLATE)
    stream.write("\n\n")

    digits = words.width // 4
    count = len(words)
    if not mutable:
        stream.write("const ")
    stream.write(f"uint{words.width}_t {symbol}[{count}] = {{")
    for i, word in enumerate(words):
        if i > 0:
            stream.write(", ")
        # rows break on input byte offsets, whatever the word width
        if (i * words.word_size) % BYTES_PER_ROW == 0:
            stream.write("\n\t")
        stream.write(f"0x{word:0{digits}x}")
    stream.write("\n};\n\n")

    stream.write(size_declaration(f"{symbol}_size", count, use_macro))
    if uncompressed_size is not None:
        stream.write(
            size_declaration(f"{symbol}_size_uncompressed", uncompressed_size, use_macro)
        )
    return count


def convert(config: Config, compressor: Compressor | None = None) -> Result:
    symbol = config.symbol
    data = load_input(config.input, config.text, config.zero_terminate)

    uncompressed_size = None
    if config.compress:
        compressor = compressor or Bz2Compressor()
        uncompressed_size = len(data)
        data = compressor.compress(data)

    words = WordPacker(data, config.bits)
    try:
        with config.output.open("a" if config.append else "w", newline="\n") as f:
            count = write_declaration(
                f,
                words,
                symbol,
                mutable=config.mutable,
                use_macro=config.use_macro,
                uncompressed_size=uncompressed_size,
                boilerplate=not config.append,
            )
    except OSError as e:
        raise IoError(f"Failed to write {config.output}.") from e

    return Result(
        output=config.output,
        symbol=symbol,
        array_size=count,
        data_size=len(data),
        uncompressed_size=uncompressed_size,
    )


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str):
        raise ArgumentError(f"{message}. {USAGE_HINT}")


def parse_args(argv: list[str] | None = None) -> Config:
    parser = ArgumentParser(
        prog="bin2c",
        usage="%(prog)s input_file [output_file] [options]",
        description=__doc__,
        add_help=False,
    )
    parser.add_argument(
        "files",
        nargs="*",
        help="The binary file to convert, then the name of the generated file "
        f"(default: input_file with a {HEADER_EXTENSION} extension).",
    )
    parser.add_argument(
        "-a",
        "--append",
        action="store_true",
        help="Append to the output file instead of overwriting.",
    )
    parser.add_argument(
        "-b",
        "--bits",
        type=int,
        default=8,
        metavar="NUMBER",
        help="Set the width of the array elements: 8, 16 or 32 (default: 8).",
    )
    parser.add_argument(
        "-c",
        "--compress",
        action="store_true",
        help="Compress the data with bzip2 and also declare the uncompressed size.",
    )
    parser.add_argument(
        "-d",
        "--define",
        dest="use_macro",
        action="store_true",
        help="Declare the array size as a #define, instead of a 'const int'.",
    )
    parser.add_argument(
        "-h", "--help", "-?", action="help", help="Show brief help."
    )
    parser.add_argument(
        "-l",
        "--label",
        default=DEFAULT_LABEL,
        metavar="NAME",
        help="Set the symbol name for the array. '$*' is replaced with the base "
        "filename (no extension) and '$@' with the full filename "
        f"(default: '{DEFAULT_LABEL}').",
    )
    parser.add_argument(
        "-m",
        "--mutable",
        action="store_true",
        help="Declare the array as mutable (non-const).",
    )
    parser.add_argument(
        "-t",
        "--text",
        action="store_true",
        help="Read the input as a text file (CRLF line endings become LF).",
    )
    parser.add_argument(
        "-z",
        "--zero",
        dest="zero_terminate",
        action="store_true",
        help="Append a zero terminator at the end of the array.",
    )
    args = parser.parse_intermixed_args(argv)

    if not args.files:
        raise ArgumentError("No input file. " + USAGE_HINT)
    if len(args.files) > 2:
        raise ArgumentError("Too many filenames. " + USAGE_HINT)

    input_path = Path(args.files[0])
    if len(args.files) > 1:
        output_path = Path(args.files[1])
    else:
        output_path = default_output(input_path)

    return Config(
        input=input_path,
        output=output_path,
        label=args.label,
        bits=args.bits,
        append=args.append,
        use_macro=args.use_macro,
        mutable=args.mutable,
        text=args.text,
        zero_terminate=args.zero_terminate,
        compress=args.compress,
    )


def main(argv: list[str] | None = None) -> int:
    try:
        config = parse_args(argv)
        convert(config)
    except Bin2CError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
