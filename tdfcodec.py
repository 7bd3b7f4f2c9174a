from tdfsource import CellPair, Diagnostic, TdfError

PADDING_PAIR = CellPair(0x20, 0x00)  # 黑底空格
MAX_PALETTE_SIZE = 254

RLE_ESCAPE = 0xFF
RLE_MIN_RUN = 3
RLE_MAX_RUN = 0xFF + RLE_MIN_RUN  # 258


class PaletteOverflowError(TdfError):
    """A font uses more distinct (char, attr) pairs than a palette can index."""

    def __init__(self, size):
        super().__init__(f"{size} unique (char, attr) pairs, limit is {MAX_PALETTE_SIZE}")
        self.size = size


def font_requires_padding(glyphs):
    """Return True if any glyph of the font is ragged.

    Args:
        glyphs (iterable): RawGlyph objects of one font.
    """
    return any(g.is_ragged() for g in glyphs)


def build_pair_palette(glyphs, requires_padding=None):
    """构建字体的局部 (字符, 属性) 调色板。

    调色板去重后按字符、属性排序，保证打包结果确定。

    Args:
        glyphs (iterable): 该字体的全部 RawGlyph。
        requires_padding (bool|None): 为 None 时根据字形自动判断。

    Returns:
        tuple: (palette, index_map)，palette 为 CellPair 列表，
        index_map 将 CellPair 映射到其下标。

    Raises:
        PaletteOverflowError: 唯一单元对超过 254 个。
    """
    glyphs = list(glyphs)
    if requires_padding is None:
        requires_padding = font_requires_padding(glyphs)

    pairs = set()
    for glyph in glyphs:
        pairs.update(glyph.cells())
    if requires_padding:
        pairs.add(PADDING_PAIR)

    palette = sorted(pairs)
    if len(palette) > MAX_PALETTE_SIZE:
        raise PaletteOverflowError(len(palette))

    index_map = {pair: i for i, pair in enumerate(palette)}
    return palette, index_map


def flatten_glyph(glyph, index_map):
    """将字形展开为 width*height 的调色板下标序列（行优先）。

    短行用填充对的下标补齐。
    """
    pad_index = index_map.get(PADDING_PAIR)
    width = glyph.declared_width
    flat = []
    for y in range(glyph.actual_height):
        line = glyph.lines[y] if y < len(glyph.lines) else []
        for x in range(width):
            if x < len(line):
                flat.append(index_map[line[x]])
            else:
                if pad_index is None:
                    raise KeyError(PADDING_PAIR)
                flat.append(pad_index)
    return flat


def rle_encode(indices):
    """Run-length encode a flat sequence of palette indices.

    Runs of three or more, and every run of the escape value itself, are
    written as ``(0xFF, run - 3, index)``. Everything else is literal.

    Args:
        indices (list): palette indices, each 0..255.

    Returns:
        bytes: the encoded stream.

    Raises:
        ValueError: an index outside 0..255, or a run of 0xFF shorter than
            three cells (palettes never hand out index 0xFF).
    """
    out = bytearray()
    i = 0
    n = len(indices)
    while i < n:
        value = indices[i]
        run = 1
        while run < RLE_MAX_RUN and i + run < n and indices[i + run] == value:
            run += 1

        if not 0 <= value <= 0xFF:
            raise ValueError(f"palette index {value} does not fit in a byte")
        if value == RLE_ESCAPE or run >= RLE_MIN_RUN:
            if run < RLE_MIN_RUN:
                # 转义三元组最少展开 3 个单元
                raise ValueError(f"run of {run} x index 0xFF cannot be encoded")
            out.append(RLE_ESCAPE)
            out.append(run - RLE_MIN_RUN)
            out.append(value)
        else:
            out.extend(indices[i:i + run])
        i += run
    return bytes(out)


def rle_decode(stream, count, diagnostics=None, source='rle'):
    """解码 RLE 流，输出恰好 ``count`` 个下标。

    Args:
        stream (bytes): 编码后的字节流。
        count (int): 期望单元数（width * height）。
        diagnostics (list|None): 非致命问题追加到此列表。
        source (str): 写入诊断记录的来源标识。

    Returns:
        list: 下标列表。流过短时以 0 补齐，过长时截断。
    """
    out = []
    pos = 0
    n = len(stream)
    while pos < n and len(out) < count:
        byte = stream[pos]
        if byte == RLE_ESCAPE:
            if pos + 2 >= n:
                if diagnostics is not None:
                    diagnostics.append(Diagnostic(source, "RLE stream ends inside an escape sequence."))
                pos = n
                break
            run = stream[pos + 1] + RLE_MIN_RUN
            value = stream[pos + 2]
            out.extend([value] * min(run, count - len(out)))
            pos += 3
        else:
            out.append(byte)
            pos += 1

    if len(out) < count:
        if diagnostics is not None:
            diagnostics.append(Diagnostic(
                source, f"RLE stream decoded to {len(out)} of {count} cells, padding with index 0."))
        out.extend([0] * (count - len(out)))
    elif pos < n and diagnostics is not None:
        diagnostics.append(Diagnostic(source, f"RLE stream has {n - pos} trailing bytes, ignored."))
    return out
