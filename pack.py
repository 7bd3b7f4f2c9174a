# -*- coding: utf-8 -*-
import argparse
import os
import sys

from colorama import Fore, Style, init

from tdfbundle import GlyphEncodeError, TdfBundlePacker, encode_font
from tdfcodec import PaletteOverflowError
from tdfrender import Align, RenderOptions, TdfRenderer, load_bitmap_font
from tdfsource import Diagnostic, TdfSourceError, TdfSourceParser

# -----------------------------------------------------------------------------
# Parameter classes
# -----------------------------------------------------------------------------

class PackParams:
    """Parameters of the pack command.

    Attributes:
        output: str, bundle file path.
        quiet: bool, suppress per-file progress and the audit report.
    """

    output = "tdf_bundle.bin"
    quiet = False

class PreviewParams:
    """Parameters of the preview command.

    Attributes:
        output: str, PNG file path.
        bitmap_font: str, raw 256x16 VGA bitmap font file.
        align: str, left / center / right.
        min_space_width: int, space width in cells when the font has none.
        extra_line_gap: int, extra pixels between lines.
        target_width: int, minimum image width in pixels.
    """

    output = "preview.png"
    bitmap_font = ""
    align = "left"
    min_space_width = 3
    extra_line_gap = 0
    target_width = 0

# -----------------------------------------------------------------------------
# Utility functions
# -----------------------------------------------------------------------------

def print_progress(current, total, prefix='Packing', suffix='', length=40):
    percent = ("{0:.1f}").format(100 * (current / float(total)))
    filled_length = int(length * current // total)
    bar = '█' * filled_length + '-' * (length - filled_length)
    sys.stdout.write(f'\r{prefix} |{bar}| {percent}% {suffix}')
    sys.stdout.flush()

def print_diagnostics(diagnostics):
    for d in diagnostics:
        print(f"{Fore.YELLOW}[warn]{Style.RESET_ALL} {d.source}: {d.message}")

def claim_key(key, taken, diagnostics):
    """Return ``key``, or ``key_2``, ``key_3``... if it is already taken."""
    if key not in taken:
        taken.add(key)
        return key
    n = 2
    while f"{key}_{n}" in taken:
        n += 1
    unique = f"{key}_{n}"
    diagnostics.append(Diagnostic(key, f"duplicate font key, stored as {unique}"))
    taken.add(unique)
    return unique

# -----------------------------------------------------------------------------
# Business logic
# -----------------------------------------------------------------------------

def pack_file(path, packer, taken, diagnostics):
    """Parse one TDF container and add its color fonts to ``packer``.

    Per-font problems are recorded in ``diagnostics`` and the font is skipped.

    Returns:
        int: number of fonts added.
    """
    with open(path, 'rb') as f:
        data = f.read()
    parser = TdfSourceParser(data, path)
    parser.check_outer_signature()

    added = 0
    for meta in parser.scan_headers():
        glyphs = parser.extract_font(meta)
        if not glyphs:
            diagnostics.append(Diagnostic(meta.unique_key, "font defines no glyphs, skipped"))
            continue
        key = claim_key(meta.unique_key, taken, diagnostics)
        try:
            record = encode_font(key, meta.spacing, glyphs)
        except (PaletteOverflowError, GlyphEncodeError) as e:
            diagnostics.append(Diagnostic(key, f"skipped: {e}"))
            continue
        packer.add_font(record)
        added += 1
    diagnostics.extend(parser.diagnostics)
    return added

def pack_directory(input_dir, diagnostics, progress=False):
    """Pack every ``*.tdf`` file of a directory.

    Files are visited in sorted order so the same directory always yields
    the same bundle.

    Returns:
        tuple: (packer, files_scanned)

    Raises:
        OSError: the directory cannot be listed.
    """
    names = sorted(n for n in os.listdir(input_dir) if os.path.splitext(n)[1].lower() == '.tdf')
    packer = TdfBundlePacker()
    taken = set()
    for idx, name in enumerate(names):
        path = os.path.join(input_dir, name)
        try:
            pack_file(path, packer, taken, diagnostics)
        except (OSError, TdfSourceError) as e:
            diagnostics.append(Diagnostic(path, f"file skipped: {e}"))
        if progress:
            print_progress(idx + 1, len(names), suffix=name[:24].ljust(24))
    if progress and names:
        print()
    return packer, len(names)

def pack(input_dir):
    """Run the pack command.

    Returns:
        int: process exit status.
    """
    quiet = PackParams.quiet
    print(f"Input directory: {os.path.abspath(input_dir)}")
    print(f"Output file:     {os.path.abspath(PackParams.output)}")

    diagnostics = []
    try:
        packer, scanned = pack_directory(input_dir, diagnostics, progress=not quiet)
    except OSError as e:
        print(Fore.RED + f"Fatal: cannot read input directory {input_dir}: {e}" + Style.RESET_ALL)
        return 1

    if not quiet:
        print_diagnostics(diagnostics)
    print(f"Scanned {scanned} TDF files, collected {len(packer.fonts)} color fonts.")
    if not packer.fonts:
        print(Fore.RED + "No usable fonts found, nothing written." + Style.RESET_ALL)
        return 1

    size = packer.finish(PackParams.output)
    print(Fore.GREEN + f"[TDFB] Bundle written: {PackParams.output} ({size/1024:.1f} KB)" + Style.RESET_ALL)

    if not quiet:
        import analyze
        analyze.analyze_bundle(PackParams.output)
    return 0

def preview(bundle, font_key, text):
    bitmap_font = load_bitmap_font(PreviewParams.bitmap_font) if PreviewParams.bitmap_font else None
    renderer = TdfRenderer(bitmap_font)
    renderer.load_file(bundle)
    options = RenderOptions(
        align=Align(PreviewParams.align),
        min_space_width=PreviewParams.min_space_width,
        extra_line_gap=PreviewParams.extra_line_gap,
        target_width=PreviewParams.target_width,
    )
    # 命令行中以字面 \n 表示换行
    image = renderer.render(font_key, text.replace('\\n', '\n'), options)
    image.save(PreviewParams.output)
    print_diagnostics(renderer.diagnostics)
    print(f"Rendered {image.size[0]}x{image.size[1]} px to {PreviewParams.output}")
    return 0

# -----------------------------------------------------------------------------
# CLI entrypoint
# -----------------------------------------------------------------------------

def autoparse(parser, params_cls, exclude=None):
    exclude = exclude or []
    attrs = {}
    for cls in reversed(params_cls.__mro__):
        for k in dir(cls):
            if not k.startswith("_"): attrs[k] = getattr(cls, k)
    for k, default_val in attrs.items():
        if k in exclude: continue
        val_type = type(default_val)
        if val_type == bool:
            parser.add_argument(f'--{k}', action='store_true', dest=k)
        else:
            parser.add_argument(f'--{k}', type=val_type, default=default_val, dest=k)

def load_args(args_obj, params_cls):
    for k in dir(params_cls):
        if not k.startswith("_") and hasattr(args_obj, k):
            setattr(params_cls, k, getattr(args_obj, k))

def main(argv=None):
    init()
    parser = argparse.ArgumentParser(description='TheDraw font bundle packer')
    subparsers = parser.add_subparsers(dest='command')

    p_pack = subparsers.add_parser('pack')
    p_pack.add_argument("input", help="Directory of .tdf files")

    p_preview = subparsers.add_parser('preview')
    p_preview.add_argument("bundle", help="Bundle file")
    p_preview.add_argument("font", help="Font key")
    p_preview.add_argument("text", help="Text to render, \\n for line breaks")

    autoparse(p_pack, PackParams)
    autoparse(p_preview, PreviewParams)

    args = parser.parse_args(argv)

    if args.command == "pack":
        load_args(args, PackParams)
        return pack(args.input)
    elif args.command == "preview":
        load_args(args, PreviewParams)
        return preview(args.bundle, args.font, args.text)
    parser.print_help()
    return 2

if __name__ == "__main__":
    sys.exit(main())
