import collections
import os
import re
import struct

TDF_COLOR_FONT_TYPE = 2
TDF_HEADER_SIGNATURE = b'\x55\xaa\x00\xff'
# 签名到字符偏移表末尾的固定长度，字形数据紧随其后
TDF_FONT_METADATA_BLOCK_SIZE = 213
TDF_NAME_MAX = 12
TDF_UNDEFINED_OFFSET = 0xFFFF

ROW_SEPARATOR = 0x0D
GLYPH_TERMINATOR = 0x00

# ASCII 33..126, TDF 偏移表的 94 个槽位
SUPPORTED_CHARS = ''.join(chr(c) for c in range(33, 127))

_UNSAFE_KEY_CHARS = re.compile(r'[^a-zA-Z0-9_.-]')

CellPair = collections.namedtuple('CellPair', 'character attribute')
Diagnostic = collections.namedtuple('Diagnostic', 'source message')


class TdfError(Exception):
    """Base class for every TDF bundle error."""


class TdfSourceError(TdfError):
    """The legacy container cannot be parsed at all."""


class RawGlyph:
    """字形的原始单元网格。

    Attributes:
        declared_width (int): TDF 中声明的宽度（单元数）。
        lines (list): 每行为 CellPair 列表，行长可能小于声明宽度。
    """

    def __init__(self, declared_width, lines):
        self.declared_width = declared_width
        self.lines = lines

    @property
    def actual_height(self):
        return max(1, len(self.lines))

    def is_ragged(self):
        """Return True when this glyph cannot fill its rectangle by itself."""
        if any(len(line) < self.declared_width for line in self.lines):
            return True
        # 无任何单元但声明了宽度的字形同样需要填充
        return self.declared_width > 0 and all(not line for line in self.lines)

    def cells(self):
        for line in self.lines:
            for cell in line:
                yield cell

    def __eq__(self, other):
        if not isinstance(other, RawGlyph):
            return NotImplemented
        return self.declared_width == other.declared_width and self.lines == other.lines

    def __repr__(self):
        return f"RawGlyph(width={self.declared_width}, height={self.actual_height})"


class FontMetadata:
    """Header fields of one embedded color font."""

    def __init__(self, unique_key, name, spacing, offsets, data_start, header_offset, block_size=0):
        self.unique_key = unique_key
        self.name = name
        self.spacing = spacing
        self.offsets = offsets
        self.data_start = data_start
        self.header_offset = header_offset
        self.block_size = block_size

    def __repr__(self):
        return f"FontMetadata({self.unique_key!r}, glyphs={len(self.offsets)})"


def make_unique_key(file_path, font_name):
    """根据文件名与字体内部名生成 bundle 中的字体键。

    Args:
        file_path (str): TDF 文件路径，仅使用不含 .tdf 后缀的文件名部分。
        font_name (str): 字体头中的名称，可以为空。

    Returns:
        str: 形如 ``<文件名>_<字体名>`` 的键。
    """
    base = os.path.basename(file_path)
    if base.lower().endswith('.tdf'):
        base = base[:-4]
    sanitized_base = _UNSAFE_KEY_CHARS.sub('_', base)
    sanitized_name = _UNSAFE_KEY_CHARS.sub('_', font_name)
    return f"{sanitized_base}_{sanitized_name or 'UnnamedFont'}"


class TdfSourceParser:
    """TheDraw 字体容器解析器

    一个 .TDF 文件可以连续包含多个字体定义，每个定义前有 4 字节签名。
    解析过程中的非致命问题记录在 ``diagnostics`` 中。

    Attributes:
        data (bytes): 原始文件数据。
        path (str): 文件路径，用于生成字体键与诊断信息。
        diagnostics (list): Diagnostic 记录列表。
    """

    def __init__(self, data, path='unknown'):
        if data is None or len(data) < TDF_FONT_METADATA_BLOCK_SIZE:
            raise TdfSourceError(f"[{path}] Invalid or too small TDF buffer provided.")
        self.data = bytes(data)
        self.path = path
        self.diagnostics = []

    def _warn(self, message):
        self.diagnostics.append(Diagnostic(self.path, message))

    def check_outer_signature(self):
        """Weak check of the 0x13 ... 0x1A file preamble."""
        ok = self.data[0] == 0x13 and self.data[19] == 0x1A
        if not ok:
            self._warn("TDF file preamble not recognised, parsing may be unreliable.")
        return ok

    def _find_next_header(self, start):
        return self.data.find(TDF_HEADER_SIGNATURE, start)

    def _read_metadata(self, header_offset):
        """解析单个字体头。

        Args:
            header_offset (int): 签名起始位置。

        Returns:
            FontMetadata|None: 非彩色字体或越界时返回 None。
        """
        if header_offset + TDF_FONT_METADATA_BLOCK_SIZE > len(self.data):
            self._warn(f"Font header at offset {header_offset} crosses the end of the file, skipped.")
            return None

        name_len = min(self.data[header_offset + 4], TDF_NAME_MAX)
        raw_name = self.data[header_offset + 5: header_offset + 5 + name_len]
        raw_name = raw_name.split(b'\x00', 1)[0]
        name = raw_name.decode('cp437').strip()

        font_type = self.data[header_offset + 21]
        if font_type != TDF_COLOR_FONT_TYPE:
            self._warn(f"Skipping non-color font {name or 'Unnamed'!r} (type {font_type}) at offset {header_offset}.")
            return None

        # TDF 中间距以 1 为基
        raw_spacing = self.data[header_offset + 22]
        spacing = raw_spacing - 1 if raw_spacing > 0 else 0
        block_size, = struct.unpack_from('<H', self.data, header_offset + 23)

        table = struct.unpack_from('<94H', self.data, header_offset + 25)
        offsets = {}
        for ch, off in zip(SUPPORTED_CHARS, table):
            if off != TDF_UNDEFINED_OFFSET:
                offsets[ch] = off

        return FontMetadata(
            unique_key=make_unique_key(self.path, name),
            name=name,
            spacing=spacing,
            offsets=offsets,
            data_start=header_offset + TDF_FONT_METADATA_BLOCK_SIZE,
            header_offset=header_offset,
            block_size=block_size,
        )

    def scan_headers(self):
        """Find every color font definition in the container.

        Returns:
            list: FontMetadata for each retained font, in file order.
        """
        fonts = []
        pos = 0
        while pos < len(self.data):
            header_offset = self._find_next_header(pos)
            if header_offset == -1:
                break
            meta = self._read_metadata(header_offset)
            if meta is not None:
                fonts.append(meta)
            pos = header_offset + len(TDF_HEADER_SIGNATURE)
        return fonts

    def extract_glyph(self, meta, char):
        """读取一个字符的原始单元网格。

        Args:
            meta (FontMetadata): 字体头信息。
            char (str): 要提取的字符。

        Returns:
            RawGlyph|None: 未定义或头部越界时返回 None。
        """
        rel = meta.offsets.get(char)
        if rel is None:
            return None

        pos = meta.data_start + rel
        # 宽度 + TDF 声明高度（不可靠，忽略）
        if pos + 2 > len(self.data):
            self._warn(f"Glyph header for {char!r} in {meta.unique_key} lies outside the file.")
            return None

        declared_width = self.data[pos]
        pos += 2

        lines = []
        line = []
        end = len(self.data)
        while True:
            if pos >= end:
                self._warn(f"Glyph {char!r} in {meta.unique_key} ended prematurely (missing terminator).")
                if line or not lines:
                    lines.append(line)
                break

            byte = self.data[pos]
            pos += 1
            if byte == GLYPH_TERMINATOR:
                if line or not lines:
                    lines.append(line)
                break
            if byte == ROW_SEPARATOR:
                lines.append(line)
                line = []
                continue

            if pos >= end:
                self._warn(f"Glyph {char!r} in {meta.unique_key} is missing the attribute for char 0x{byte:02x}.")
                if line or not lines:
                    lines.append(line)
                break
            line.append(CellPair(byte, self.data[pos]))
            pos += 1

        return RawGlyph(declared_width, lines)

    def extract_font(self, meta):
        """Return ``{char: RawGlyph}`` for every defined character of a font."""
        glyphs = {}
        for ch in SUPPORTED_CHARS:
            glyph = self.extract_glyph(meta, ch)
            if glyph is not None:
                glyphs[ch] = glyph
        return glyphs
