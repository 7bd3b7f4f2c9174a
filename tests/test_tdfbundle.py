import struct

import pytest

from conftest import raw_glyph
from tdfbundle import (
    BUNDLE_MAGIC,
    BUNDLE_VERSION,
    HEADER_SIZE,
    BundleFormatError,
    EncodedGlyph,
    FontNotFoundError,
    FontRecord,
    GlyphEncodeError,
    TdfBundlePacker,
    TdfBundleReader,
    encode_font,
)
from tdfcodec import PADDING_PAIR
from tdfsource import CellPair


def _padded_rows(glyph):
    rows = []
    for y in range(glyph.actual_height):
        line = glyph.lines[y] if y < len(glyph.lines) else []
        rows.append(list(line) + [PADDING_PAIR] * (glyph.declared_width - len(line)))
    return rows


def test_scenario_bundle_layout(scenario_bundle):
    data = scenario_bundle
    magic, version, count, index_off, string_off, data_off = struct.unpack_from('<4sBIIII', data)
    assert magic == BUNDLE_MAGIC
    assert version == BUNDLE_VERSION
    assert count == 1
    assert index_off == HEADER_SIZE == 21
    assert string_off == 29
    assert data[string_off:data_off] == b'demo_A\x00'
    assert data[index_off:string_off] == struct.pack('<II', 0, 0)

    # spacing, 1 pair, (A, 07), 1 glyph, GLT (A, 0), W=2 H=1, two literal zeros
    assert data[data_off:] == bytes([1, 1, 0x41, 0x07, 1, 0x41, 0, 0, 2, 1, 0, 0])


def test_fonts_sorted_by_key_and_deterministic():
    def build(order):
        packer = TdfBundlePacker()
        for key in order:
            packer.add_font(encode_font(key, 0, {'A': raw_glyph(1, [[(0xDB, 0x01)]])}))
        return packer.build()

    first = build(['zeta', 'alpha', 'mid'])
    second = build(['mid', 'zeta', 'alpha'])
    assert first == second

    reader = TdfBundleReader()
    assert reader.load(first) == ['alpha', 'mid', 'zeta']


def test_duplicate_key_rejected():
    packer = TdfBundlePacker()
    packer.add_font(FontRecord('k', 0, [], {}))
    with pytest.raises(ValueError):
        packer.add_font(FontRecord('k', 0, [], {}))


def test_round_trip_including_padding():
    glyphs = {
        'A': raw_glyph(3, [[(0xDC, 0x1F)], [(0xDB, 0x1F), (0xDB, 0x1F), (0xDB, 0x1F)]]),
        'Z': raw_glyph(4, [[(0xB0, 0x40)] * 4, [(0xB1, 0x40), (0xB2, 0x40)]]),
        '!': raw_glyph(2, [[]]),
        '~': raw_glyph(5, [[(0xDB, 0x0E)] * 5] * 3),
    }
    packer = TdfBundlePacker()
    packer.add_font(encode_font('font_X', 2, glyphs))
    reader = TdfBundleReader()
    reader.load(packer.build())

    for ch, raw in glyphs.items():
        decoded = reader.decode_glyph('font_X', ch)
        assert (decoded.width, decoded.height) == (raw.declared_width, raw.actual_height)
        assert decoded.rows() == _padded_rows(raw)
    assert reader.diagnostics == []


def test_lookup_metrics_and_absent_glyphs(mixed_bundle):
    reader = TdfBundleReader()
    reader.load(mixed_bundle)

    assert reader.lookup_glyph_metrics('beta_Ragged', 'A') == (3, 2)
    assert reader.lookup_glyph_metrics('beta_Ragged', 'Z') == (4, 2)
    assert reader.lookup_glyph_metrics('beta_Ragged', '!') == (2, 1)
    assert reader.lookup_glyph_metrics('beta_Ragged', ord('Z')) == (4, 2)
    for missing in ('B', ' ', '@', 'z', 'é', 'AB', 300):
        assert reader.lookup_glyph_metrics('beta_Ragged', missing) is None
    assert reader.decode_glyph('alpha_Plain', 'Z') is None
    assert reader.font_spacing('beta_Ragged') == 2
    assert reader.font_palette('alpha_Plain') == [CellPair(0xDB, 0x0A), CellPair(0xDB, 0x0C)]


def test_every_defined_glyph_found_by_binary_search():
    glyphs = {chr(c): raw_glyph(1, [[(c, 0x07)]]) for c in range(33, 127) if c % 3}
    packer = TdfBundlePacker()
    packer.add_font(encode_font('many', 0, glyphs))
    reader = TdfBundleReader()
    reader.load(packer.build())

    for c in range(0, 256):
        decoded = reader.decode_glyph('many', c)
        if chr(c) in glyphs:
            assert decoded.cells == [CellPair(c, 0x07)]
        else:
            assert decoded is None


def test_glyph_entries(mixed_bundle):
    reader = TdfBundleReader()
    reader.load(mixed_bundle)
    entries = reader.glyph_entries('beta_Ragged')
    assert [e[0] for e in entries] == [ord('!'), ord('A'), ord('Z')]
    assert [e[1:3] for e in entries] == [(2, 1), (3, 2), (4, 2)]


def test_unknown_font_key(mixed_bundle):
    reader = TdfBundleReader()
    reader.load(mixed_bundle)
    with pytest.raises(FontNotFoundError):
        reader.lookup_glyph_metrics('nope', 'A')
    with pytest.raises(KeyError):
        reader.decode_glyph('nope', 'A')


def test_load_rejects_bad_headers(scenario_bundle):
    reader = TdfBundleReader()
    with pytest.raises(BundleFormatError):
        reader.load(scenario_bundle[:20])
    with pytest.raises(BundleFormatError):
        reader.load(b'XXXX' + scenario_bundle[4:])
    with pytest.raises(BundleFormatError):
        reader.load(scenario_bundle[:4] + b'\x01' + scenario_bundle[5:])

    broken = bytearray(scenario_bundle)
    struct.pack_into('<I', broken, 5, 1000)  # font count far past the index table
    with pytest.raises(BundleFormatError):
        reader.load(bytes(broken))

    broken = bytearray(scenario_bundle)
    struct.pack_into('<I', broken, 17, len(broken) + 1)
    with pytest.raises(BundleFormatError):
        reader.load(bytes(broken))


def test_empty_key_is_skipped(mixed_bundle):
    data = bytearray(mixed_bundle)
    string_off = struct.unpack_from('<I', data, 13)[0]
    data[string_off] = 0  # blank out "alpha_Plain"
    reader = TdfBundleReader()
    assert reader.load(bytes(data)) == ['beta_Ragged']
    assert any('empty font key' in d.message for d in reader.diagnostics)


def test_corrupt_short_stream_pads_with_index_zero():
    record = FontRecord('bad', 0, [CellPair(0x41, 0x07), CellPair(0x42, 0x07)],
                        {ord('A'): EncodedGlyph(2, 2, bytes([1]))})
    packer = TdfBundlePacker()
    packer.add_font(record)
    reader = TdfBundleReader()
    reader.load(packer.build())

    glyph = reader.decode_glyph('bad', 'A')
    assert glyph.cells == [CellPair(0x42, 0x07)] + [CellPair(0x41, 0x07)] * 3
    assert any('padding with index 0' in d.message for d in reader.diagnostics)


def test_out_of_range_index_decodes_to_blank():
    record = FontRecord('bad', 0, [CellPair(0x41, 0x07)],
                        {ord('A'): EncodedGlyph(2, 1, bytes([0, 9]))})
    packer = TdfBundlePacker()
    packer.add_font(record)
    reader = TdfBundleReader()
    reader.load(packer.build())

    glyph = reader.decode_glyph('bad', 'A')
    assert glyph.cells == [CellPair(0x41, 0x07), PADDING_PAIR]
    assert reader.diagnostics


def test_truncated_font_block_degrades():
    packer = TdfBundlePacker()
    packer.add_font(encode_font('cut', 0, {'A': raw_glyph(1, [[(0x41, 0x07)]])}))
    data = packer.build()
    reader = TdfBundleReader()
    reader.load(data[:-4])  # lose the lookup table tail and glyph data
    assert reader.lookup_glyph_metrics('cut', 'A') is None
    assert reader.diagnostics


def test_font_offsets_past_buffer_degrade(mixed_bundle):
    data = bytearray(mixed_bundle)
    index_off = struct.unpack_from('<I', data, 9)[0]
    struct.pack_into('<I', data, index_off + 4, len(data) + 10)
    struct.pack_into('<I', data, index_off + 8 + 4, len(data) + 100)
    reader = TdfBundleReader()
    assert reader.load(bytes(data)) == ['alpha_Plain', 'beta_Ragged']

    for key in ('alpha_Plain', 'beta_Ragged'):
        assert reader.lookup_glyph_metrics(key, 'A') is None
        assert reader.decode_glyph(key, 'A') is None
        assert reader.glyph_entries(key) == []
        assert reader.font_palette(key) == []
    assert any('truncated' in d.message for d in reader.diagnostics)


def test_glyph_offset_past_font_block(scenario_bundle):
    data = bytearray(scenario_bundle)
    data_off = struct.unpack_from('<I', data, 17)[0]
    # spacing, pair count, one pair, glyph count, then the GLT entry (code, rel)
    struct.pack_into('<H', data, data_off + 6, 0xFFFF)
    reader = TdfBundleReader()
    reader.load(bytes(data))

    assert reader.decode_glyph('demo_A', 'A') is None
    assert reader.lookup_glyph_metrics('demo_A', 'A') is None
    assert reader.glyph_entries('demo_A') == []
    assert any('outside its font block' in d.message for d in reader.diagnostics)


def test_too_tall_glyph_rejected():
    with pytest.raises(GlyphEncodeError):
        encode_font('tall', 0, {'A': raw_glyph(1, [[(0x41, 0x07)]] * 256)})


def test_too_wide_glyph_rejected():
    with pytest.raises(GlyphEncodeError):
        encode_font('wide', 0, {'A': raw_glyph(300, [[(0x41, 0x07)]])})


def test_header_cache_reused(mixed_bundle):
    reader = TdfBundleReader()
    reader.load(mixed_bundle)
    reader.lookup_glyph_metrics('beta_Ragged', 'A')
    cached = dict(reader._headers)
    reader.decode_glyph('beta_Ragged', 'Z')
    assert reader._headers == cached
    assert len(cached) == 1


def test_finish_writes_file(tmp_path, scenario_bundle):
    packer = TdfBundlePacker()
    packer.add_font(encode_font('demo_A', 1, {'A': raw_glyph(2, [[(0x41, 0x07), (0x41, 0x07)]])}))
    target = tmp_path / 'out' / 'bundle.bin'
    size = packer.finish(str(target))
    assert target.read_bytes() == scenario_bundle
    assert size == len(scenario_bundle)
