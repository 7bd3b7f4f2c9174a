import struct

import pytest

from tdfbundle import TdfBundlePacker, encode_font
from tdfsource import TDF_HEADER_SIGNATURE, CellPair, RawGlyph

PREAMBLE = b'\x13TheDraw FONTS file\x1a'


def font_block(name, glyphs, spacing=1, font_type=2):
    """Build one TDF font definition.

    ``glyphs`` maps a character to ``(width, lines)`` where ``lines`` is a list
    of lists of ``(char, attr)`` tuples. ``spacing`` is the decoded value, the
    block stores it 1-based.
    """
    data = bytearray()
    table = [0xFFFF] * 94
    for ch, (width, lines) in glyphs.items():
        table[ord(ch) - 33] = len(data)
        data.append(width)
        data.append(len(lines))
        for i, line in enumerate(lines):
            if i:
                data.append(0x0D)
            for c, a in line:
                data += bytes((c, a))
        data.append(0x00)

    raw_name = name.encode('ascii')[:12]
    header = bytearray(TDF_HEADER_SIGNATURE)
    header.append(len(raw_name))
    header += raw_name.ljust(12, b'\x00')
    header += b'\x00' * 4
    header.append(font_type)
    header.append(spacing + 1)
    header += struct.pack('<H', len(data))
    header += struct.pack('<94H', *table)
    assert len(header) == 213
    return bytes(header + data)


def tdf_file(*blocks):
    return PREAMBLE + b''.join(blocks)


def raw_glyph(width, lines):
    return RawGlyph(width, [[CellPair(c, a) for c, a in line] for line in lines])


@pytest.fixture
def scenario_glyphs():
    # spacing 1, one 2x1 glyph "A", no space glyph
    return {'A': raw_glyph(2, [[(0x41, 0x07), (0x41, 0x07)]])}


@pytest.fixture
def scenario_bundle(scenario_glyphs):
    packer = TdfBundlePacker()
    packer.add_font(encode_font('demo_A', 1, scenario_glyphs))
    return packer.build()


@pytest.fixture
def mixed_bundle():
    """Two fonts; the second one has ragged and multi-row glyphs."""
    packer = TdfBundlePacker()
    packer.add_font(encode_font('alpha_Plain', 0, {
        'A': raw_glyph(1, [[(0xDB, 0x0C)]]),
        'B': raw_glyph(1, [[(0xDB, 0x0A)]]),
    }))
    packer.add_font(encode_font('beta_Ragged', 2, {
        'A': raw_glyph(3, [[(0xDC, 0x1F)], [(0xDB, 0x1F), (0xDB, 0x1F), (0xDB, 0x1F)]]),
        'Z': raw_glyph(4, [[(0xB0, 0x40)] * 4, [(0xB1, 0x40), (0xB2, 0x40)]]),
        '!': raw_glyph(2, [[]]),
    }))
    return packer.build()
