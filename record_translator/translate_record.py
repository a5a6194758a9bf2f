import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

# --- Python Version Check ---
if sys.version_info < (3, 11):
    sys.stderr.write("Error: This script requires Python 3.11 or newer.\n")
    sys.stderr.write(f"You are running Python {sys.version.split()[0]}.\n")
    sys.exit(1)
# --- End Version Check ---

from tqdm import tqdm

from record_translator.app_config import load_app_config
from record_translator.completion_client import CancellationToken
from record_translator.host import JsonRecordHost
from record_translator.record_fields import (
    TranslateOptions,
    get_source_value,
    is_field_translatable,
    translate_record_fields
)

logger = logging.getLogger("record_translator.translate_record")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Translate the localizable fields of an exported CMS record with an LLM."
    )
    parser.add_argument('--record', required=True, help="Path to the record export (JSON).")
    parser.add_argument('--from', dest='source', required=True, help="Source locale code, e.g. 'en'.")
    parser.add_argument(
        '--to', dest='targets', action='append', required=True,
        help="Target locale code; repeat the flag or pass a comma-separated list."
    )
    parser.add_argument('--output', help="Where to write the translated record (defaults to overwriting --record).")
    return parser.parse_args(argv)


def split_locales(values: List[str]) -> List[str]:
    """Flatten repeated / comma-separated locale arguments, keeping order and dropping duplicates."""
    locales: List[str] = []
    for value in values:
        for code in value.split(','):
            code = code.strip()
            if code and code not in locales:
                locales.append(code)
    return locales


async def main(argv: Optional[List[str]] = None) -> int:
    """
    Load the configuration and the record, translate it and save the result.

    Returns:
        int: Process exit code (1 when any field/locale job failed).
    """
    args = parse_args(argv)
    settings = load_app_config()

    host = JsonRecordHost.from_file(args.record, access_token=os.environ.get('CMS_API_TOKEN', ''))
    target_locales = [locale for locale in split_locales(args.targets) if locale != args.source]
    if not target_locales:
        logger.info("No target locales other than the source locale were given. Exiting.")
        return 0

    eligible_fields = [
        field_meta for field_meta in host.record_fields()
        if is_field_translatable(field_meta, settings)
        and get_source_value(host.form_values, field_meta, args.source) is not None
    ]
    total_jobs = len(eligible_fields) * len(target_locales)
    logger.info(f"Detected {len(eligible_fields)} translatable field(s), {total_jobs} job(s).")

    if settings.dry_run:
        for field_meta in eligible_fields:
            for locale in target_locales:
                logger.info(f"[Dry Run] Would translate '{field_meta.api_key}' ({field_meta.editor}) into '{locale}'.")
        return 0

    cancellation = CancellationToken()
    loop = asyncio.get_running_loop()
    signal_handler_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, cancellation.cancel)
        signal_handler_installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("Signal handlers are not supported here; Ctrl-C will abort immediately.")

    try:
        with tqdm(total=total_jobs, desc=f"Translating {os.path.basename(args.record)}", unit="translation") as progress:
            options = TranslateOptions(
                on_complete=lambda label, locale: progress.update(1),
                cancellation=cancellation
            )
            summary = await translate_record_fields(host, settings, target_locales, args.source, options)
    finally:
        if signal_handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        if settings.completion_client is not None:
            await settings.completion_client.aclose()

    output_path = args.output or args.record
    host.save(output_path)

    if summary.failed:
        logger.error(f"{summary.failed} translation(s) failed: {', '.join(summary.failed_paths)}")
        return 1
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except Exception as main_exc:
        logger.error(f"An unexpected error occurred during execution: {main_exc}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
