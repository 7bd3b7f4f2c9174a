import os
import struct
import collections

from tdfsource import CellPair, Diagnostic, TdfError
from tdfcodec import (
    PADDING_PAIR,
    build_pair_palette,
    flatten_glyph,
    rle_decode,
    rle_encode,
)

BUNDLE_MAGIC = b'TDFB'
BUNDLE_VERSION = 4
# Magic(4) Version(1) FontCount(4) IndexOff(4) StringOff(4) DataOff(4)
HEADER_STRUCT = struct.Struct('<4sBIIII')
HEADER_SIZE = HEADER_STRUCT.size  # 21
INDEX_ENTRY = struct.Struct('<II')
GLT_ENTRY = struct.Struct('<BH')

MAX_GDT_OFFSET = 0xFFFF
MAX_GLYPH_DIM = 0xFF


class GlyphEncodeError(TdfError):
    """A glyph or glyph table does not fit the bundle's fixed-width fields."""


class BundleFormatError(TdfError):
    """The buffer is not a bundle this reader understands."""


class FontNotFoundError(TdfError, KeyError):
    """Requested font key is not in the loaded bundle."""


EncodedGlyph = collections.namedtuple('EncodedGlyph', 'width height rle_stream')


class FontRecord:
    """一个字体在 bundle 中的全部内容。

    Attributes:
        unique_key (str): bundle 内唯一的字体键。
        spacing (int): 字符间距（单元数）。
        palette (list): 排序后的 CellPair 调色板。
        glyphs (dict): 字符码 -> EncodedGlyph。
    """

    def __init__(self, unique_key, spacing, palette, glyphs):
        self._unique_key = unique_key
        self.spacing = spacing
        self.palette = palette
        self.glyphs = glyphs

    @property
    def unique_key(self):
        return self._unique_key

    def __repr__(self):
        return f"FontRecord({self._unique_key!r}, pairs={len(self.palette)}, glyphs={len(self.glyphs)})"


def encode_font(unique_key, spacing, raw_glyphs):
    """Turn the raw glyphs of one font into a FontRecord.

    Args:
        unique_key (str): bundle key of the font.
        spacing (int): letter spacing in cells.
        raw_glyphs (dict): character (str) or code (int) -> RawGlyph.

    Returns:
        FontRecord: palette plus RLE-encoded glyphs.

    Raises:
        PaletteOverflowError: more than 254 distinct pairs.
        GlyphEncodeError: a glyph is wider or taller than 255 cells or the glyph data
            table outgrows its 16-bit offsets.
    """
    codes = {}
    for ch, glyph in raw_glyphs.items():
        code = ord(ch) if isinstance(ch, str) else ch
        codes[code] = glyph

    palette, index_map = build_pair_palette(codes.values())

    glyphs = {}
    gdt_offset = 0
    for code in sorted(codes):
        raw = codes[code]
        if raw.declared_width > MAX_GLYPH_DIM or raw.actual_height > MAX_GLYPH_DIM:
            raise GlyphEncodeError(
                f"glyph 0x{code:02x} is {raw.declared_width}x{raw.actual_height} cells, limit is {MAX_GLYPH_DIM}")
        if gdt_offset > MAX_GDT_OFFSET:
            raise GlyphEncodeError(f"glyph data table exceeds {MAX_GDT_OFFSET} bytes")
        stream = rle_encode(flatten_glyph(raw, index_map))
        glyphs[code] = EncodedGlyph(raw.declared_width, raw.actual_height, stream)
        gdt_offset += 2 + len(stream)

    return FontRecord(unique_key, spacing, palette, glyphs)


class TdfBundlePacker:
    """TDFB 字体包打包器

    字体按键排序后依次写入头部、索引表、字符串池与字体数据池，
    同样的输入总是得到逐字节相同的输出。

    Attributes:
        fonts (dict): 暂存的 FontRecord，键为 unique_key。
    """

    def __init__(self):
        self.fonts = {}

    def add_font(self, record):
        """暂存一个字体。

        Args:
            record (FontRecord): 已编码的字体。

        Raises:
            ValueError: 键已存在。
        """
        if record.unique_key in self.fonts:
            raise ValueError(f"duplicate font key {record.unique_key!r}")
        self.fonts[record.unique_key] = record

    def _pack_font(self, record):
        block = bytearray()
        block.append(record.spacing)
        block.append(len(record.palette))
        for pair in record.palette:
            block.append(pair.character)
            block.append(pair.attribute)

        codes = sorted(record.glyphs)
        block.append(len(codes))

        glt = bytearray()
        gdt = bytearray()
        for code in codes:
            glyph = record.glyphs[code]
            glt += GLT_ENTRY.pack(code, len(gdt))
            gdt.append(glyph.width)
            gdt.append(glyph.height)
            gdt += glyph.rle_stream
        return bytes(block + glt + gdt)

    def build(self):
        """Assemble the bundle.

        Returns:
            bytes: header + index table + string pool + font data pool.
        """
        keys = sorted(self.fonts)

        string_pool = bytearray()
        data_pool = bytearray()
        index = bytearray()
        for key in keys:
            index += INDEX_ENTRY.pack(len(string_pool), len(data_pool))
            string_pool += key.encode('utf-8') + b'\x00'
            data_pool += self._pack_font(self.fonts[key])

        index_off = HEADER_SIZE
        string_off = index_off + len(index)
        data_off = string_off + len(string_pool)
        header = HEADER_STRUCT.pack(BUNDLE_MAGIC, BUNDLE_VERSION, len(keys), index_off, string_off, data_off)
        return header + bytes(index) + bytes(string_pool) + bytes(data_pool)

    def finish(self, filename):
        """将 bundle 写入文件。

        Args:
            filename (str): 输出路径，父目录不存在时自动创建。

        Returns:
            int: 写入的字节数。
        """
        data = self.build()
        out_dir = os.path.dirname(filename)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        with open(filename, 'wb') as f:
            f.write(data)
        return len(data)


_FontHeader = collections.namedtuple('_FontHeader', 'spacing palette glyph_count glt_offset gdt_offset end')
_EMPTY_HEADER = _FontHeader(0, (), 0, 0, 0, 0)


class DecodedGlyph:
    """A glyph expanded back to one CellPair per cell, row-major."""

    def __init__(self, width, height, cells):
        self.width = width
        self.height = height
        self.cells = cells

    def rows(self):
        w = self.width
        return [self.cells[y * w:(y + 1) * w] for y in range(self.height)]

    def cell(self, x, y):
        return self.cells[y * self.width + x]

    def __repr__(self):
        return f"DecodedGlyph({self.width}x{self.height})"


def _char_code(char):
    if isinstance(char, str):
        if len(char) != 1:
            return None
        return ord(char)
    return char


class TdfBundleReader:
    """解析 TDFB 字体包并按字体键与字符查询字形。

    只有头部校验失败会抛出异常，其余损坏数据都降级处理并记录到
    ``diagnostics``。

    Attributes:
        data (bytes|None): 原始 bundle 数据。
        fonts (dict): 字体键 -> 字体数据池内相对偏移。
        diagnostics (list): Diagnostic 记录列表。
    """

    def __init__(self):
        self.data = None
        self.fonts = {}
        self.diagnostics = []
        self._data_pool = 0
        self._font_ends = {}
        self._headers = {}

    def _warn(self, source, message):
        self.diagnostics.append(Diagnostic(source, message))

    def load_file(self, filename):
        with open(filename, 'rb') as f:
            return self.load(f.read())

    def load(self, data):
        """校验并索引 bundle。

        Args:
            data (bytes): 完整的 bundle 数据。

        Returns:
            list: 排序后的字体键。

        Raises:
            BundleFormatError: 长度不足、魔数错误、版本不支持或偏移越界。
        """
        data = bytes(data)
        if len(data) < HEADER_SIZE:
            raise BundleFormatError(f"bundle is {len(data)} bytes, header needs {HEADER_SIZE}")

        magic, version, count, index_off, string_off, data_off = HEADER_STRUCT.unpack_from(data, 0)
        if magic != BUNDLE_MAGIC:
            raise BundleFormatError(f"bad magic {magic!r}, expected {BUNDLE_MAGIC!r}")
        if version != BUNDLE_VERSION:
            raise BundleFormatError(f"unsupported bundle version {version}, expected {BUNDLE_VERSION}")

        size = len(data)
        if (index_off > size or string_off > size or data_off > size
                or index_off + count * INDEX_ENTRY.size > size):
            raise BundleFormatError("section offsets point outside the bundle")

        fonts = {}
        offsets = []
        string_end = data_off if data_off > string_off else size
        for i in range(count):
            key_rel, font_rel = INDEX_ENTRY.unpack_from(data, index_off + i * INDEX_ENTRY.size)
            key = self._read_key(data, string_off + key_rel, string_end, i)
            if key is None:
                continue
            if key in fonts:
                self._warn(key, f"duplicate font key at index {i}, keeping the first entry")
                continue
            fonts[key] = font_rel
            offsets.append(font_rel)

        self.data = data
        self.fonts = fonts
        self._data_pool = data_off
        self._headers = {}

        # 每个字体块的结尾为下一个更大偏移，最后一个到文件尾
        offsets = sorted(set(offsets))
        self._font_ends = {}
        for i, rel in enumerate(offsets):
            end = data_off + offsets[i + 1] if i + 1 < len(offsets) else size
            self._font_ends[rel] = min(end, size)
        return self.list_fonts()

    def _read_key(self, data, start, end, slot):
        if start >= end:
            self._warn('index', f"key offset of entry {slot} lies outside the string pool")
            return None
        stop = data.find(b'\x00', start, end)
        if stop == -1:
            stop = end
        try:
            key = data[start:stop].decode('utf-8')
        except UnicodeDecodeError:
            self._warn('index', f"font key of entry {slot} is not valid UTF-8")
            return None
        if not key:
            self._warn('index', f"empty font key at entry {slot}")
            return None
        return key

    def list_fonts(self):
        return sorted(self.fonts)

    def has_font(self, key):
        return key in self.fonts

    def _font_offset(self, key):
        if self.data is None:
            raise BundleFormatError("no bundle loaded")
        try:
            return self.fonts[key]
        except KeyError:
            raise FontNotFoundError(key) from None

    def _font_header(self, key):
        """Parse (once) spacing, palette and glyph table bounds of a font."""
        rel = self._font_offset(key)
        header = self._headers.get(rel)
        if header is not None:
            return header

        data = self.data
        base = self._data_pool + rel
        end = min(self._font_ends.get(rel, len(data)), len(data))
        header = _EMPTY_HEADER
        if base + 2 > end:
            self._warn(key, "font block is truncated before its palette")
        else:
            spacing = data[base]
            n_pairs = data[base + 1]
            pal_start = base + 2
            count_pos = pal_start + n_pairs * 2
            if count_pos + 1 > end:
                self._warn(key, "font block is truncated inside its palette")
                header = _FontHeader(spacing, (), 0, 0, 0, end)
            else:
                palette = tuple(
                    CellPair(data[pal_start + i * 2], data[pal_start + i * 2 + 1]) for i in range(n_pairs))
                glyph_count = data[count_pos]
                glt = count_pos + 1
                gdt = glt + glyph_count * GLT_ENTRY.size
                if gdt > end:
                    self._warn(key, "glyph lookup table is truncated, font has no usable glyphs")
                    glyph_count = 0
                header = _FontHeader(spacing, palette, glyph_count, glt, gdt, end)

        # 同一输入总是得到相同结果，重复填充无害
        self._headers[rel] = header
        return header

    def font_spacing(self, key):
        return self._font_header(key).spacing

    def font_palette(self, key):
        return list(self._font_header(key).palette)

    def glyph_entries(self, key):
        """List ``(code, width, height, stream_length)`` for every glyph, in table order."""
        header = self._font_header(key)
        rels = [GLT_ENTRY.unpack_from(self.data, header.glt_offset + i * GLT_ENTRY.size)
                for i in range(header.glyph_count)]
        entries = []
        for i, (code, rel) in enumerate(rels):
            pos = header.gdt_offset + rel
            if pos + 2 > header.end:
                continue
            end = header.gdt_offset + rels[i + 1][1] if i + 1 < len(rels) else header.end
            entries.append((code, self.data[pos], self.data[pos + 1], max(0, min(end, header.end) - pos - 2)))
        return entries

    def _find_glyph(self, header, code):
        """二分查找字形查找表。

        Returns:
            tuple|None: (GLT 下标, 相对偏移)，未命中返回 None。
        """
        lo, hi = 0, header.glyph_count - 1
        while lo <= hi:
            mid = (lo + hi) // 2
            entry_code, rel = GLT_ENTRY.unpack_from(self.data, header.glt_offset + mid * GLT_ENTRY.size)
            if entry_code == code:
                return mid, rel
            if code < entry_code:
                hi = mid - 1
            else:
                lo = mid + 1
        return None

    def _locate(self, key, char):
        header = self._font_header(key)
        code = _char_code(char)
        if code is None or not 0 <= code <= 0xFF or header.glyph_count == 0:
            return header, None, None
        found = self._find_glyph(header, code)
        if found is None:
            return header, None, None
        slot, rel = found
        pos = header.gdt_offset + rel
        if pos + 2 > header.end:
            self._warn(key, f"glyph 0x{code:02x} points outside its font block")
            return header, None, None
        return header, slot, pos

    def lookup_glyph_metrics(self, key, char):
        """Width and height (in cells) of a glyph without decoding it.

        Returns:
            tuple|None: ``(width, height)`` or None when the font lacks the glyph.
        """
        _, _, pos = self._locate(key, char)
        if pos is None:
            return None
        return self.data[pos], self.data[pos + 1]

    def decode_glyph(self, key, char):
        """Expand a glyph to its cell pairs.

        Returns:
            DecodedGlyph|None: None when the font lacks the glyph.
        """
        header, slot, pos = self._locate(key, char)
        if pos is None:
            return None

        width, height = self.data[pos], self.data[pos + 1]
        stream_end = header.end
        if slot + 1 < header.glyph_count:
            _, next_rel = GLT_ENTRY.unpack_from(self.data, header.glt_offset + (slot + 1) * GLT_ENTRY.size)
            stream_end = min(stream_end, header.gdt_offset + next_rel)
        stream = self.data[pos + 2:max(pos + 2, stream_end)]

        source = f"{key}:0x{_char_code(char):02x}"
        indices = rle_decode(stream, width * height, self.diagnostics, source)

        palette = header.palette
        cells = []
        bad = 0
        for idx in indices:
            if idx < len(palette):
                cells.append(palette[idx])
            else:
                bad += 1
                cells.append(PADDING_PAIR)
        if bad:
            self._warn(source, f"{bad} cells reference palette entries past {len(palette)}, drawn blank")
        return DecodedGlyph(width, height, cells)
