#!/usr/bin/env python3

import argparse
import codecs
import io
import logging
import os
import re
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from xml.parsers import expat
from xml.sax.saxutils import escape, quoteattr, unescape

import pandas as pd

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

OUTPUT_FILENAME = "SpareParts_Import.xml"
DELIMITER = ";"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
INDENT = " " * 4
LINE_ENDINGS = {"lf": "\n", "crlf": "\r\n"}
LINE_ENDING_ENV = "SPAREPARTS2XML_LINE_ENDING"

# (attribute, CSV column, XML tag), in output order
FIELDS: List[Tuple[str, str, str]] = [
    ("id", "LFDNR", "id"),
    ("article_number", "ART_ID_ET", "articleNumber"),
    ("article_description", "DESC_ET", "articleDescription"),
    ("order_number", "BESTELLNUMMER", "orderNumber"),
    ("order_description", "BESTELLTEXT", "orderDescription"),
    ("article_search_text", "SUCHTEXT", "articleSearchText"),
]
REQUIRED_COLUMNS = [column for _, column, _ in FIELDS]

MAX_ID = 2**32 - 1
ID_RE = re.compile(r"\+?[0-9]+")
INVALID_XML_CHARS_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")
# XML whitespace only; U+00A0 and friends are content
XML_WHITESPACE = " \t\r\n"
EMPTY_ELEMENT_RE = re.compile(r"<([^\s/>!?]+)([^>]*?)>[ \t\r\n]+</\1[ \t\r\n]*>")
SEARCH_TEXT_CDATA_RE = re.compile(r"<articleSearchText><!\[CDATA\[(.*?)\]\]></articleSearchText>", re.DOTALL)

C1_ERROR_HANDLER = "spareparts2xml.c1"


class ConverterError(Exception):
    """Base class for every fatal conversion error."""


class ArgumentError(ConverterError):
    pass


class FileAccessError(ConverterError):
    pass


class DecodingError(ConverterError):
    pass


class ParseError(ConverterError):
    pass


class SerializationError(ConverterError):
    pass


class FormatError(ConverterError):
    """The formatter could not re-parse the serializer's own output."""


@dataclass
class Product:
    id: int
    article_number: str
    article_description: str
    order_number: str
    order_description: str
    article_search_text: str


def _decode_c1(err: UnicodeDecodeError) -> Tuple[str, int]:
    # cp1252 leaves 0x81, 0x8D, 0x8F, 0x90 and 0x9D undefined; map them to U+0081 etc.
    undefined = err.object[err.start:err.end]
    return "".join(chr(b) for b in undefined), err.end


codecs.register_error(C1_ERROR_HANDLER, _decode_c1)


def decode_input(raw: bytes, ansi: bool = False) -> str:
    """Turn the raw input bytes into text.

    With ``ansi`` the bytes are Windows-1252, every one of the 256 values maps to
    a character. Otherwise the bytes must be UTF-8. A leading UTF-8 BOM is
    dropped in both modes.
    """
    if raw.startswith(codecs.BOM_UTF8):
        raw = raw[len(codecs.BOM_UTF8):]
    if ansi:
        return raw.decode("cp1252", errors=C1_ERROR_HANDLER)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodingError(
            f"input is not valid UTF-8 (byte 0x{raw[e.start]:02X} at offset {e.start}); "
            "use --ansi for Windows-1252 files"
        ) from e


def read_input(path: Path, ansi: bool = False) -> str:
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise FileAccessError(f'cannot read "{path}": {e.strerror or e}') from e
    logger.info("Read %d bytes from %s (%s)", len(raw), path, "Windows-1252" if ansi else "UTF-8")
    return decode_input(raw, ansi=ansi)


def wrap_cdata(value: str) -> str:
    return f"<![CDATA[{value}]]>"


def parse_id(value: str, row_number: int) -> int:
    if not ID_RE.fullmatch(value) or int(value) > MAX_ID:
        raise ParseError(f"data row {row_number}: LFDNR must be an unsigned 32-bit integer, got {value!r}")
    return int(value)


def parse_records(text: str) -> List[Product]:
    """Parse semicolon-separated text with a header row into products, in row order.

    Column order is free and unknown columns are ignored, but all of
    REQUIRED_COLUMNS must be present. The search text of every product comes
    back already wrapped in a CDATA section.
    """
    try:
        df = pd.read_csv(
            io.StringIO(text),
            sep=DELIMITER,
            header=None,
            dtype=str,
            keep_default_na=False,
            engine="python",
        )
    except pd.errors.EmptyDataError as e:
        raise ParseError("input is empty, expected a header row") from e
    except pd.errors.ParserError as e:
        raise ParseError(f"malformed CSV: {e}") from e

    header = [str(name) for name in df.iloc[0]]
    missing = [column for column in REQUIRED_COLUMNS if column not in header]
    if missing:
        raise ParseError(f"header is missing required column(s): {', '.join(missing)}")
    positions = [header.index(column) for column in REQUIRED_COLUMNS]

    products: List[Product] = []
    for row_number, row in enumerate(df.iloc[1:].itertuples(index=False, name=None), start=1):
        if any(pd.isna(value) for value in row):
            raise ParseError(f"data row {row_number}: expected {len(header)} fields, found fewer")
        values = [row[i] for i in positions]
        product = Product(parse_id(values[0], row_number), *values[1:])
        product.article_search_text = wrap_cdata(product.article_search_text)
        products.append(product)

    logger.info("Parsed %d product rows", len(products))
    return products


def unescape_cdata_markers(xml: str) -> str:
    # ElementTree has no CDATA support, so the wrapped search text comes out as
    # &lt;![CDATA[...]]&gt;. Only these two markers are restored, wherever they occur.
    return xml.replace("&lt;![CDATA[", "<![CDATA[").replace("]]&gt;", "]]>")


def unescape_search_text(xml: str) -> str:
    # Text inside CDATA is literal, so the escaping ElementTree applied between
    # the markers is undone, for the articleSearchText element only.
    return SEARCH_TEXT_CDATA_RE.sub(
        lambda m: f"<articleSearchText>{wrap_cdata(unescape(m.group(1)))}</articleSearchText>", xml
    )


def serialize_products(products: Sequence[Product]) -> str:
    """Render products as compact ``<productList>`` XML without a declaration."""
    root = ET.Element("productList")
    for number, product in enumerate(products, start=1):
        product_elem = ET.SubElement(root, "product")
        for attr, _, tag in FIELDS:
            value = str(getattr(product, attr))
            bad = INVALID_XML_CHARS_RE.search(value)
            if bad:
                raise SerializationError(
                    f"product {number}: {tag} contains U+{ord(bad.group()):04X}, which XML cannot represent"
                )
            ET.SubElement(product_elem, tag).text = value

    try:
        xml = ET.tostring(root, encoding="unicode")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"cannot serialize products: {e}") from e
    return unescape_search_text(unescape_cdata_markers(xml))


class _IndentWriter:
    """Re-emits expat events, one tag per line, text and CDATA kept inline."""

    def __init__(self, newline: str, indent: str = INDENT):
        self.newline = newline
        self.indent = indent
        self.parts: List[str] = []
        self.depth = 0
        self.line_break = False
        self.text: List[str] = []
        self.cdata: Optional[List[str]] = None

    def feed(self, xml: str) -> str:
        parser = expat.ParserCreate()
        parser.buffer_text = True
        parser.ordered_attributes = True
        parser.StartElementHandler = self.start
        parser.EndElementHandler = self.end
        parser.CharacterDataHandler = self.data
        parser.StartCdataSectionHandler = self.start_cdata
        parser.EndCdataSectionHandler = self.end_cdata
        parser.CommentHandler = self.comment
        parser.ProcessingInstructionHandler = self.pi
        parser.Parse(xml, True)
        return "".join(self.parts)

    def _markup(self, markup: str) -> None:
        self._flush_text()
        if self.line_break:
            self.parts.append(self.newline + self.indent * self.depth)
        self.parts.append(markup)
        self.line_break = True

    def _flush_text(self) -> None:
        text = "".join(self.text).strip(XML_WHITESPACE)
        self.text = []
        if text:
            self.parts.append(escape(text))
            self.line_break = False

    def start(self, name: str, attrs: List[str]) -> None:
        pairs = zip(attrs[::2], attrs[1::2])
        self._markup("<" + name + "".join(f" {k}={quoteattr(v)}" for k, v in pairs) + ">")
        self.depth += 1

    def end(self, name: str) -> None:
        self._flush_text()
        self.depth -= 1
        self._markup(f"</{name}>")

    def data(self, text: str) -> None:
        if self.cdata is not None:
            self.cdata.append(text)
        else:
            self.text.append(text)

    def start_cdata(self) -> None:
        self._flush_text()
        self.cdata = []

    def end_cdata(self) -> None:
        self.parts.append(wrap_cdata("".join(self.cdata or [])))
        self.cdata = None
        self.line_break = False

    def comment(self, text: str) -> None:
        self._markup(f"<!--{text}-->")

    def pi(self, target: str, data: str) -> None:
        self._markup(f"<?{target} {data}?>" if data else f"<?{target}?>")


def prettify_xml(xml: str, newline: str = os.linesep) -> str:
    """Indent pass: one element per line, four spaces per level.

    Whitespace around text is trimmed and whitespace-only text is dropped;
    CDATA content is kept verbatim. Any XML declaration in the input is dropped.
    """
    try:
        return _IndentWriter(newline).feed(xml)
    except expat.ExpatError as e:
        raise FormatError(f"cannot re-parse generated XML at line {e.lineno}, column {e.offset}: {e}") from e


def replace_empty_tags(xml: str) -> str:
    """Collapse ``<tag>`` + whitespace + ``</tag>`` into ``<tag />``."""
    return EMPTY_ELEMENT_RE.sub(r"<\1\2 />", xml)


def append_xml_header(xml: str, newline: str = os.linesep) -> str:
    return XML_DECLARATION + newline + xml


def format_xml(xml: str, newline: str = os.linesep) -> str:
    pretty = prettify_xml(xml, newline)
    logger.debug("Indent pass: %d -> %d characters", len(xml), len(pretty))
    collapsed = replace_empty_tags(pretty)
    logger.debug("Empty-tag pass: %d -> %d characters", len(pretty), len(collapsed))
    return append_xml_header(collapsed, newline)


def convert(raw: bytes, ansi: bool = False, newline: str = os.linesep) -> str:
    """Full pipeline from input bytes to the final XML document text."""
    products = parse_records(decode_input(raw, ansi=ansi))
    return format_xml(serialize_products(products), newline)


def write_output(path: Path, xml: str) -> None:
    # newline="" keeps the chosen line separator as is
    try:
        with path.open("w", encoding="utf-8", newline="") as f:
            f.write(xml)
    except OSError as e:
        raise FileAccessError(f'cannot write "{path}": {e.strerror or e}') from e


def convert_file(
    input_path: Path,
    output_path: Path = Path(OUTPUT_FILENAME),
    ansi: bool = False,
    newline: str = os.linesep,
) -> int:
    """Convert ``input_path`` and write the result; returns the number of products.

    Nothing is written unless every stage before the write succeeds.
    """
    if not input_path.exists():
        raise ArgumentError(f'"{input_path}" does not exist')
    products = parse_records(read_input(input_path, ansi=ansi))
    xml = format_xml(serialize_products(products), newline)
    write_output(output_path, xml)
    logger.info("Wrote %d characters to %s", len(xml), output_path)
    return len(products)


def resolve_line_ending(name: str) -> str:
    if name == "auto":
        return os.linesep
    try:
        return LINE_ENDINGS[name]
    except KeyError:
        raise ArgumentError(f"unknown line ending {name!r}, expected auto, lf or crlf") from None


def existing_file(value: str) -> str:
    if not Path(value).exists():
        raise argparse.ArgumentTypeError(f'"{value}" does not exist')
    return value


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="spareparts2xml",
        description=f"Convert a semicolon-separated spare parts CSV to {OUTPUT_FILENAME}.",
    )
    p.add_argument("input", type=existing_file, help="Path to input CSV (semicolon-separated, header row).")
    p.add_argument("-a", "--ansi", action="store_true", help="Read the input file as ANSI (Windows-1252) instead of UTF-8.")
    p.add_argument("--line-ending", choices=["auto", "lf", "crlf"], default=os.getenv(LINE_ENDING_ENV, "auto"),
                   help=f"Line separator of the XML output. Default: ${LINE_ENDING_ENV} or auto (platform separator).")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        count = convert_file(
            Path(args.input),
            Path(OUTPUT_FILENAME),
            ansi=args.ansi,
            newline=resolve_line_ending(args.line_ending),
        )
    except ConverterError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(f"Wrote {count} products to {OUTPUT_FILENAME}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
