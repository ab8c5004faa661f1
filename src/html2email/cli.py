"""Command-line interface for html2email."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from .version import __version__


def _get_usage() -> str:
    return (
        f"html2email {__version__}\n"
        "Usage:\n"
        "  html2email [--help] [--version|--ver]\n"
        "  html2email (--input FILE | --from-dir DIR) --images-dir DIR [options]\n\n"
        "Options:\n"
        "  --input FILE                 Exported document HTML (images/ resolved beside it)\n"
        "  --from-dir DIR               Use the most recently modified *.html in DIR\n"
        "  --images-dir DIR             Where renamed section images are written\n"
        "                               (fallback: HTML2EMAIL_IMAGES_DIR)\n"
        "  --output FILE                Output email HTML (default: newsletter-email.html)\n"
        "  --date YYYY-MM-DD            Newsletter date (default: next Sunday)\n"
        "  --publish-dir DIR            Publish images into DIR (fallback: HTML2EMAIL_PUBLISH_DIR)\n"
        "  --asset-base-url URL         Public URL of --publish-dir (fallback: HTML2EMAIL_ASSET_BASE_URL)\n"
        "  --plan                       Print the section image plan as JSON and exit\n"
        "  --verbose                    Verbose progress logs\n"
        "  --debug                      Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("--input", help="Exported document HTML file")
    parser.add_argument("--from-dir", help="Directory holding the exported document HTML and images/")
    parser.add_argument("--images-dir", help="Directory for renamed section images")
    parser.add_argument("--output", help="Output email HTML file")
    parser.add_argument("--date", help="Newsletter date as YYYY-MM-DD")
    parser.add_argument("--publish-dir", help="Directory-backed asset host target")
    parser.add_argument("--asset-base-url", help="Public base URL of the publish directory")
    parser.add_argument("--plan", action="store_true", help="Print the image plan and exit")
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    return parser


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    if not argv or args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    try:
        from html2email import core
        from html2email.images import AssetUploadError
    except Exception as exc:
        print(f"Unable to import html2email core: {exc}", file=sys.stderr)
        return 6

    if args.input and args.from_dir:
        print("Options --input and --from-dir are mutually exclusive", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if args.from_dir:
        from_dir = Path(args.from_dir).expanduser().resolve()
        if not from_dir.is_dir():
            print(f"Source directory not found: {from_dir}", file=sys.stderr)
            return core.EXIT_INVALID_ARGS
        source_path = core.find_latest_html(from_dir)
        if source_path is None:
            print(f"No .html document found in {from_dir}", file=sys.stderr)
            return core.EXIT_INVALID_ARGS
    elif args.input:
        source_path = Path(args.input).expanduser().resolve()
    else:
        print(_get_usage())
        print("One of --input or --from-dir is required", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if not source_path.is_file():
        print(f"Source document not found: {source_path}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    images_dir_value = args.images_dir or os.environ.get(core.IMAGES_DIR_ENV)
    if not images_dir_value:
        print(f"Option --images-dir is required (or set {core.IMAGES_DIR_ENV})", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    try:
        run_date = core.parse_run_date(args.date) if args.date else core.next_newsletter_date()
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    output_path = Path(args.output or core.DEFAULT_OUTPUT_NAME).expanduser().resolve()
    if output_path.exists() and not output_path.is_file():
        print(f"Output path is not a file: {output_path}", file=sys.stderr)
        return core.EXIT_OUTPUT

    publish_dir_value = args.publish_dir or os.environ.get(core.PUBLISH_DIR_ENV)
    config = core.ConversionConfig(
        source_path=source_path,
        images_dir=Path(images_dir_value).expanduser().resolve(),
        run_date=run_date,
        output_path=output_path,
        publish_dir=Path(publish_dir_value).expanduser().resolve() if publish_dir_value else None,
        asset_base_url=str(args.asset_base_url or os.environ.get(core.ASSET_BASE_URL_ENV) or ""),
        verbose=bool(args.verbose),
        debug=bool(args.debug),
    )

    core.setup_logging(config.verbose, config.debug)

    if args.plan:
        try:
            plan = core.build_image_plan(config)
        except RuntimeError as exc:
            print(str(exc), file=sys.stderr)
            return core.EXIT_PIPELINE
        print(core.format_image_plan(plan), end="")
        return 0

    try:
        core.run_conversion_pipeline(config)
    except AssetUploadError as exc:
        print(f"Asset upload failed: {exc}", file=sys.stderr)
        return core.EXIT_ASSET_HOST
    except RuntimeError as exc:
        print(f"Conversion failed: {exc}", file=sys.stderr)
        return core.EXIT_PIPELINE
    except OSError as exc:
        print(f"Unable to write output {output_path}: {exc}", file=sys.stderr)
        return core.EXIT_OUTPUT

    if config.verbose:
        print(f"Email HTML written to {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
