# -*- coding: utf-8 -*-
import collections
import os
import sys

from colorama import init, Fore, Style

from tdfbundle import (
    GLT_ENTRY,
    HEADER_SIZE,
    INDEX_ENTRY,
    BundleFormatError,
    TdfBundleReader,
)


def collect_stats(reader):
    """Account for every byte of a loaded bundle.

    Args:
        reader (TdfBundleReader): reader with a bundle loaded.

    Returns:
        dict: section sizes under 'sections', per-font rows under 'fonts',
        and glyph byte sizes under 'glyph_sizes'.
    """
    keys = reader.list_fonts()
    sections = {
        'header': HEADER_SIZE,
        'index': len(keys) * INDEX_ENTRY.size,
        'string_pool': sum(len(k.encode('utf-8')) + 1 for k in keys),
        'font_headers': 0,
        'palettes': 0,
        'lookup_tables': 0,
        'glyph_headers': 0,
        'rle_streams': 0,
    }
    fonts = []
    glyph_sizes = []

    for key in keys:
        palette = reader.font_palette(key)
        entries = reader.glyph_entries(key)

        # 间距、调色板大小、字形数各 1 字节
        sections['font_headers'] += 3
        sections['palettes'] += len(palette) * 2
        sections['lookup_tables'] += len(entries) * GLT_ENTRY.size
        sections['glyph_headers'] += len(entries) * 2

        raw_bytes = 0
        rle_bytes = 0
        for code, width, height, stream_len in entries:
            raw_bytes += width * height * 2
            rle_bytes += stream_len
            glyph_sizes.append(stream_len + 2)
        sections['rle_streams'] += rle_bytes

        fonts.append({
            'key': key,
            'spacing': reader.font_spacing(key),
            'pairs': len(palette),
            'glyphs': len(entries),
            'raw_bytes': raw_bytes,
            'rle_bytes': rle_bytes,
        })

    return {'sections': sections, 'fonts': fonts, 'glyph_sizes': glyph_sizes}


def analyze_bundle(filename, top=10):
    """Analyze a TDFB bundle and print an audit report.

    Args:
        filename (str): Path to the bundle.
        top (int): Number of largest fonts to list.

    Returns:
        dict|None: the collected statistics, None if the file is unusable.
    """
    if not os.path.exists(filename):
        print(f"Error: File {filename} not found.")
        return None

    file_size = os.path.getsize(filename)
    reader = TdfBundleReader()
    try:
        reader.load_file(filename)
    except BundleFormatError as e:
        print(f"Error: Not a TDFB bundle ({e}).")
        return None

    stats = collect_stats(reader)
    sections = stats['sections']
    fonts = stats['fonts']

    def pct(n):
        return n / file_size * 100 if file_size else 0.0

    print(f"\n{Fore.MAGENTA}TDFB Bundle Audit Report{Style.RESET_ALL} | Fonts: {len(fonts)}")
    print(f"{Fore.YELLOW}File Path:{Style.RESET_ALL} {filename}")
    print("-" * 75)

    print(Fore.CYAN + f"{'Component':<20} {'Bytes':<10} {'Percentage':<12} {'Notes'}" + Style.RESET_ALL)
    print(f"{'Global Header':<20} {sections['header']:<10} {pct(sections['header']):>8.1f}%     Fixed 21B")
    print(f"{'Index Table':<20} {sections['index']:<10} {pct(sections['index']):>8.1f}%     8B per font")
    print(f"{'String Pool':<20} {sections['string_pool']:<10} {pct(sections['string_pool']):>8.1f}%     NUL-terminated keys")
    print(f"{'Font Headers':<20} {sections['font_headers']:<10} {pct(sections['font_headers']):>8.1f}%     3B per font")
    print(f"{'Pair Palettes':<20} {sections['palettes']:<10} {pct(sections['palettes']):>8.1f}%     2B per pair")
    print(f"{'Lookup Tables':<20} {sections['lookup_tables']:<10} {pct(sections['lookup_tables']):>8.1f}%     3B per glyph")
    print(f"{'Glyph Headers':<20} {sections['glyph_headers']:<10} {pct(sections['glyph_headers']):>8.1f}%     W/H per glyph")
    print(f"{'RLE Streams':<20} {sections['rle_streams']:<10} {pct(sections['rle_streams']):>8.1f}%     Palette indices")
    print("-" * 75)
    print(f"{'TOTAL':<20} {file_size:<10} {100.0:>8.1f}%")
    accounted = sum(sections.values())
    if accounted != file_size:
        print(Fore.RED + f" {file_size - accounted} bytes not accounted for." + Style.RESET_ALL)
    print("-" * 75)

    raw_total = sum(f['raw_bytes'] for f in fonts)
    rle_total = sum(f['rle_bytes'] for f in fonts)
    print(f"{Fore.CYAN}[Compression]{Style.RESET_ALL}")
    print(f" Raw (char, attr) cells: {raw_total} B")
    print(f" RLE index streams:      {rle_total} B", end="")
    if raw_total:
        print(f"  ({rle_total / raw_total * 100:.1f}% of raw)")
    else:
        print()

    print(f"\n{Fore.CYAN}[Largest Fonts]{Style.RESET_ALL}")
    for f in sorted(fonts, key=lambda f: (-f['rle_bytes'], f['key']))[:top]:
        print(f" {f['key'][:36]:<36} {f['glyphs']:>3} glyphs {f['pairs']:>4} pairs {f['rle_bytes']:>7} B")

    print(f"\n{Fore.CYAN}[Glyph Size Histogram]{Style.RESET_ALL}")
    glyph_sizes = stats['glyph_sizes']
    buckets = collections.defaultdict(int)
    for size in glyph_sizes: buckets[(size // 20) * 20] += 1
    for b_range in sorted(buckets.keys()):
        count = buckets[b_range]
        bar = "#" * int((count / len(glyph_sizes)) * 40)
        print(f" {b_range:4d}-{b_range+19:4d} B: {count:5d} | {bar}")

    if reader.diagnostics:
        print(f"\n{Fore.CYAN}[Diagnostics]{Style.RESET_ALL}")
        for d in reader.diagnostics:
            print(f" {Fore.YELLOW}{d.source}{Style.RESET_ALL}: {d.message}")

    print("-" * 75)
    full_pairs = [f['key'] for f in fonts if f['pairs'] >= 240]
    if full_pairs:
        print(Fore.RED + f" NOTE: {len(full_pairs)} fonts are close to the 254-pair palette limit." + Style.RESET_ALL)
    else:
        print(Fore.GREEN + " STATUS: All palettes well within the 254-pair limit." + Style.RESET_ALL)
    return stats

if __name__ == "__main__":
    init()
    if len(sys.argv) < 2:
        print(f"{Fore.YELLOW}Usage:{Style.RESET_ALL} python analyze.py <bundle.bin>")
    else:
        analyze_bundle(sys.argv[1])
