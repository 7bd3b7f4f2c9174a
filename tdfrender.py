import enum

from PIL import Image

from tdfbundle import TdfBundleReader
from tdfsource import SUPPORTED_CHARS

CELL_WIDTH = 8
CELL_HEIGHT = 16
DEFAULT_MIN_SPACE_WIDTH = 3

# CGA/EGA/VGA 16 色，RGBA
TDF_COLORS = (
    (0, 0, 0, 255), (0, 0, 170, 255), (0, 170, 0, 255), (0, 170, 170, 255),
    (170, 0, 0, 255), (170, 0, 170, 255), (170, 85, 0, 255), (170, 170, 170, 255),
    (85, 85, 85, 255), (85, 85, 255, 255), (85, 255, 85, 255), (85, 255, 255, 255),
    (255, 85, 85, 255), (255, 85, 255, 255), (255, 255, 85, 255), (255, 255, 255, 255),
)


class Align(enum.Enum):
    LEFT = 'left'
    CENTER = 'center'
    RIGHT = 'right'


class RenderOptions:
    """Options for :meth:`TdfRenderer.render`.

    Attributes:
        align: Align, horizontal alignment of each line inside the text block.
        background_color: 4-tuple RGBA used to clear the surface.
        min_space_width: int, width in cells of a space the font does not define.
        extra_line_gap: int, extra pixels between consecutive lines.
        target_width: int, minimum surface width in pixels.
    """

    def __init__(self, align=Align.LEFT, background_color=(0, 0, 0, 255),
                 min_space_width=DEFAULT_MIN_SPACE_WIDTH, extra_line_gap=0, target_width=0):
        self.align = Align(align)
        background_color = tuple(background_color)
        if len(background_color) != 4 or not all(0 <= c <= 255 for c in background_color):
            raise ValueError(f"background_color must be 4 RGBA bytes, got {background_color!r}")
        self.background_color = background_color
        for name, value in (('min_space_width', min_space_width),
                            ('extra_line_gap', extra_line_gap),
                            ('target_width', target_width)):
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
        self.min_space_width = min_space_width
        self.extra_line_gap = extra_line_gap
        self.target_width = target_width


def load_bitmap_font(filename, height=CELL_HEIGHT):
    """读取 256 字符 x 16 行的原始 VGA 点阵字体。

    Args:
        filename (str): 字体文件路径（通常为 4096 字节）。
        height (int): 每个字符的行数。

    Returns:
        list: 256 项，每项为行字节列表；文件不足的字符为 None。
    """
    with open(filename, 'rb') as f:
        data = f.read()
    glyphs = []
    for code in range(256):
        chunk = data[code * height:(code + 1) * height]
        glyphs.append(list(chunk) if len(chunk) == height else None)
    return glyphs


class TextLayout:
    """Pixel metrics of (multi-line) text, computed from glyph metrics only."""

    def __init__(self, reader):
        self.reader = reader

    def char_metrics(self, key, char, min_space_width=DEFAULT_MIN_SPACE_WIDTH):
        """计算单个字符的像素宽高。

        Returns:
            tuple: (width_px, height_px, occupies)，occupies 表示该字符参与间距计数。
        """
        metrics = self.reader.lookup_glyph_metrics(key, char)
        if char == ' ':
            if metrics is not None and metrics[0] > 0:
                return metrics[0] * CELL_WIDTH, max(1, metrics[1]) * CELL_HEIGHT, True
            return min_space_width * CELL_WIDTH, CELL_HEIGHT, True
        if metrics is None:
            return 0, CELL_HEIGHT, False
        width = metrics[0] * CELL_WIDTH
        return width, max(1, metrics[1]) * CELL_HEIGHT, width > 0

    def line_size(self, key, line, min_space_width=DEFAULT_MIN_SPACE_WIDTH):
        if not line:
            return 0, CELL_HEIGHT

        spacing_px = self.reader.font_spacing(key) * CELL_WIDTH
        width = 0
        height = 0
        occupied = 0
        for ch in line:
            w, h, occupies = self.char_metrics(key, ch, min_space_width)
            width += w
            height = max(height, h)
            if occupies:
                occupied += 1
        if occupied > 1:
            width += (occupied - 1) * spacing_px
        return max(width, CELL_WIDTH), max(height, CELL_HEIGHT)

    def measure(self, key, text, min_space_width=DEFAULT_MIN_SPACE_WIDTH, extra_line_gap=0):
        """Overall ``(width, height)`` in pixels of ``text`` set in font ``key``."""
        if not text:
            # 未知字体仍需报错
            self.reader.font_spacing(key)
            return CELL_WIDTH, CELL_HEIGHT

        sizes = [self.line_size(key, line, min_space_width) for line in text.split('\n')]
        width = max(w for w, _ in sizes)
        height = sum(h for _, h in sizes) + extra_line_gap * (len(sizes) - 1)
        return max(width, CELL_WIDTH), max(height, CELL_HEIGHT)

    @staticmethod
    def align_offset(align, block_width, line_width):
        align = Align(align)
        if align is Align.CENTER:
            return (block_width - line_width) // 2
        if align is Align.RIGHT:
            return block_width - line_width
        return 0


class GlyphRasterizer:
    """Paints decoded glyph cells onto a Pillow image.

    ``bitmap_font`` is indexed by CP437 code and yields 16 row bytes (MSB is
    the leftmost pixel); missing entries are painted as background.
    """

    def __init__(self, bitmap_font=None):
        self.bitmap_font = bitmap_font
        self._masks = {}

    def _mask(self, code):
        if code in self._masks:
            return self._masks[code]
        rows = None
        if self.bitmap_font is not None:
            try:
                rows = self.bitmap_font[code]
            except (IndexError, KeyError):
                rows = None
        mask = None
        if rows is not None and len(rows) >= CELL_HEIGHT:
            mask = Image.frombytes('1', (CELL_WIDTH, CELL_HEIGHT), bytes(r & 0xFF for r in rows[:CELL_HEIGHT]))
        self._masks[code] = mask
        return mask

    @staticmethod
    def cell_colors(attribute):
        """Return ``(foreground, background)`` RGBA for an attribute byte."""
        return TDF_COLORS[attribute & 0x0F], TDF_COLORS[(attribute >> 4) & 0x07]

    def paint_cell(self, surface, character, attribute, x, y):
        fg, bg = self.cell_colors(attribute)
        surface.paste(bg, (x, y, x + CELL_WIDTH, y + CELL_HEIGHT))
        mask = self._mask(character & 0xFF)
        if mask is not None:
            surface.paste(fg, (x, y, x + CELL_WIDTH, y + CELL_HEIGHT), mask)

    def paint_glyph(self, surface, glyph, base_x, base_y):
        for y, row in enumerate(glyph.rows()):
            for x, cell in enumerate(row):
                self.paint_cell(surface, cell.character, cell.attribute,
                                base_x + x * CELL_WIDTH, base_y + y * CELL_HEIGHT)


class TdfRenderer:
    """Public decoder API: bundle loading, font queries, layout and rendering.

    Attributes:
        reader (TdfBundleReader): the loaded bundle.
        layout (TextLayout): metrics engine bound to ``reader``.
        rasterizer (GlyphRasterizer): cell painter.
    """

    def __init__(self, bitmap_font=None):
        self.reader = TdfBundleReader()
        self.layout = TextLayout(self.reader)
        self.rasterizer = GlyphRasterizer(bitmap_font)

    @property
    def diagnostics(self):
        return self.reader.diagnostics

    def load(self, data):
        return self.reader.load(data)

    def load_file(self, filename):
        return self.reader.load_file(filename)

    def list_fonts(self):
        return self.reader.list_fonts()

    def filter_fonts_supporting(self, text):
        """返回支持 ``text`` 中全部可渲染字符（ASCII 33..126）的字体键。"""
        required = sorted(set(ch for ch in text or '' if ch in SUPPORTED_CHARS))
        if not required:
            return self.list_fonts()
        return [key for key in self.list_fonts()
                if all(self.reader.lookup_glyph_metrics(key, ch) is not None for ch in required)]

    def measure(self, key, text, min_space_width=DEFAULT_MIN_SPACE_WIDTH, extra_line_gap=0):
        return self.layout.measure(key, text, min_space_width, extra_line_gap)

    def _render_line(self, surface, key, line, x, y, min_space_width):
        spacing_px = self.reader.font_spacing(key) * CELL_WIDTH
        placed = 0
        for ch in line:
            width, _, occupies = self.layout.char_metrics(key, ch, min_space_width)
            if not occupies:
                continue
            if placed:
                x += spacing_px
            glyph = self.reader.decode_glyph(key, ch)
            if glyph is not None:
                self.rasterizer.paint_glyph(surface, glyph, x, y)
            x += width
            placed += 1

    def render(self, key, text, options=None):
        """把文本渲染为 RGBA 图像。

        Args:
            key (str): 字体键。
            text (str): 文本，可以包含 ``\\n``。
            options (RenderOptions|None): 渲染选项，None 时使用默认值。

        Returns:
            PIL.Image.Image: 渲染结果。

        Raises:
            FontNotFoundError: 字体键不存在。
        """
        options = options or RenderOptions()
        min_space = options.min_space_width
        block_w, block_h = self.measure(key, text, min_space, options.extra_line_gap)

        width = max(options.target_width, block_w, CELL_WIDTH)
        height = max(block_h, CELL_HEIGHT)
        surface = Image.new('RGBA', (width, height), options.background_color)
        if not text:
            return surface

        # 画布比文本宽时整体居中
        block_x = (width - block_w) // 2
        y = 0
        for line in text.split('\n'):
            line_w, line_h = self.layout.line_size(key, line, min_space)
            x = block_x + TextLayout.align_offset(options.align, block_w, line_w)
            self._render_line(surface, key, line, x, y, min_space)
            y += line_h + options.extra_line_gap
        return surface
