"""Application configuration module for the record translator."""
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import yaml
from dotenv import load_dotenv
from openai import AsyncOpenAI

from record_translator.completion_client import (
    CompletionClient,
    OpenAICompletionClient,
    ProxyCompletionClient
)
from record_translator.logging_config import setup_logger

DEFAULT_PROMPT_TEMPLATE = """You are a professional translator for content managed in a CMS.
Translate from {fromLocale} to {toLocale}: {fieldValue}

{recordContext}

Return only the translation, without comments or explanations."""

DEFAULT_TRANSLATION_FIELDS = [
    'single_line',
    'markdown',
    'wysiwyg',
    'textarea',
    'slug',
    'json',
    'seo',
    'structured_text',
    'rich_text',
    'file',
]


@dataclass
class AppConfig:
    """Application configuration dataclass."""
    # Remote completion service
    proxy_url: str = ''
    model_name: str = 'gpt-4o-mini'
    temperature: float = 0.2
    max_tokens: int = 800
    request_timeout: float = 60.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    requests_per_minute: int = 60

    # Prompting
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE

    # Field selection
    translation_fields: List[str] = field(default_factory=lambda: list(DEFAULT_TRANSLATION_FIELDS))
    excluded_field_ids: List[str] = field(default_factory=list)

    # Language configuration
    language_codes: Dict[str, str] = field(default_factory=dict)

    # Batching
    batch_char_limit: int = 4800
    batch_concurrency: int = 2
    chunk_size: int = 3000
    chunk_concurrency: int = 2
    chunk_pacing_seconds: float = 0.08
    max_depth: int = 8

    # Job scheduling
    concurrency: int = 3
    job_pacing_seconds: float = 0.06
    write_debounce_seconds: float = 0.25
    write_pacing_seconds: float = 0.08

    # Processing settings
    dry_run: bool = False

    # Completion client
    completion_client: Optional[CompletionClient] = None


def _compute_project_root() -> str:
    """Compute the project root directory."""
    script_real_path = os.path.realpath(__file__)
    script_dir = os.path.dirname(script_real_path)
    return os.path.abspath(os.path.join(script_dir, os.pardir))


def _load_dotenv_files(project_root: str) -> None:
    """Load .env files from project root or docker directory."""
    dotenv_path_project_root = os.path.join(project_root, '.env')
    dotenv_path_docker_dir = os.path.join(project_root, 'docker', '.env')

    if os.path.exists(dotenv_path_project_root):
        load_dotenv(dotenv_path_project_root)
    elif os.path.exists(dotenv_path_docker_dir):
        load_dotenv(dotenv_path_docker_dir)


def _load_yaml_config(project_root: str) -> Dict[str, Any]:
    """Load the YAML configuration file, falling back to an empty dict on any problem."""
    default_config_path = os.path.join(project_root, 'config.yaml')
    config_file = os.environ.get('TRANSLATOR_CONFIG_FILE', default_config_path)

    if not os.path.isabs(config_file):
        config_file = os.path.abspath(config_file)

    config = {}
    try:
        if not os.path.exists(config_file):
            print(f"Warning: Configuration file '{config_file}' not found. Using default configuration.",
                  file=sys.stderr)
            print(f"Tip: Create a config.yaml file in '{project_root}' or set TRANSLATOR_CONFIG_FILE environment variable.",
                  file=sys.stderr)
            return config

        if not os.access(config_file, os.R_OK):
            print(f"Error: Configuration file '{config_file}' exists but is not readable. Check file permissions.",
                  file=sys.stderr)
            return config

        with open(config_file, 'r', encoding='utf-8') as config_file_stream:
            loaded_config = yaml.safe_load(config_file_stream)
            if loaded_config is None:
                print(f"Warning: Configuration file '{config_file}' is empty. Using default configuration.",
                      file=sys.stderr)
            elif isinstance(loaded_config, dict):
                config = loaded_config
                print(f"Successfully loaded configuration from: {config_file}", file=sys.stderr)
            else:
                print(f"Error: Configuration file '{config_file}' must contain a YAML dictionary. Using defaults.",
                      file=sys.stderr)

    except yaml.YAMLError as e:
        print(f"Error: Invalid YAML in configuration file '{config_file}': {e}", file=sys.stderr)
        print("Please check your YAML syntax. Using default configuration.", file=sys.stderr)
    except (OSError, IOError) as e:
        print(f"Error: Could not read configuration file '{config_file}': {e}", file=sys.stderr)
        print("Using default configuration.", file=sys.stderr)

    return config


def _setup_logger_from_config(config: Dict[str, Any]) -> logging.Logger:
    """Set up logger based on configuration."""
    log_config = config.get('logging', {})
    log_level_str = log_config.get('log_level', 'INFO').upper()
    log_file_path = log_config.get('log_file_path', 'logs/record_translator.log')
    log_to_console = log_config.get('log_to_console', True)
    return setup_logger(log_level_str, log_file_path, log_to_console)


def _log_dotenv_status(logger: logging.Logger, project_root: str) -> None:
    """Log the status of .env file loading."""
    dotenv_path_project_root = os.path.join(project_root, '.env')
    dotenv_path_docker_dir = os.path.join(project_root, 'docker', '.env')

    if os.path.exists(dotenv_path_project_root):
        logger.info("Loaded environment variables from: %s", dotenv_path_project_root)
    elif os.path.exists(dotenv_path_docker_dir):
        logger.info("Loaded environment variables from: %s", dotenv_path_docker_dir)
    else:
        logger.info(
            "No .env file found in project root ('%s') or in docker/ ('%s'). Relying on system environment variables if any.",
            dotenv_path_project_root,
            dotenv_path_docker_dir
        )


def _build_language_mappings(locales_list: List[Dict[str, str]]) -> Dict[str, str]:
    """Build the locale code -> display name mapping from supported locales."""
    language_codes: Dict[str, str] = {}
    for locale in locales_list:
        code = locale.get('code')
        name = locale.get('name')
        if code and name:
            language_codes[code] = name
    return language_codes


def _create_completion_client(
        config: Dict[str, Any],
        proxy_url: str,
        model_name: str,
        dry_run: bool,
        logger: logging.Logger
) -> Optional[CompletionClient]:
    """
    Create the completion client: the HTTP proxy when one is configured,
    otherwise the OpenAI API when OPENAI_API_KEY is set.
    """
    client_kwargs = dict(
        temperature=float(config.get('temperature', 0.2)),
        max_tokens=config.get('max_tokens', 800),
        max_retries=int(config.get('max_retries', 3)),
        retry_base_delay=float(config.get('retry_base_delay', 1.0)),
        requests_per_minute=int(config.get('requests_per_minute', 60)),
        max_concurrent_requests=int(config.get('concurrency', 3)),
        request_timeout=float(config.get('request_timeout', 60.0)),
    )

    if proxy_url:
        logger.info("Routing completions through proxy: %s", proxy_url)
        return ProxyCompletionClient(
            proxy_url, model_name, extra=config.get('extra_request_fields'), **client_kwargs
        )

    api_key_from_env = os.environ.get('OPENAI_API_KEY')
    if api_key_from_env:
        if not api_key_from_env.startswith('sk-'):
            logger.warning("Warning: OPENAI_API_KEY does not start with 'sk-'. This may be invalid.")
        # Retries are handled by CompletionClient.complete.
        openai_client = AsyncOpenAI(api_key=api_key_from_env, max_retries=0)
        logger.info("OpenAI client initialized successfully")
        return OpenAICompletionClient(openai_client, model_name, **client_kwargs)

    if dry_run:
        logger.info("Running in dry-run mode without a completion service")
        return None

    logger.critical("CRITICAL: neither TRANSLATOR_PROXY_URL / proxy_url nor OPENAI_API_KEY is configured.")
    logger.critical("Set one of them or enable dry_run mode in configuration.")
    sys.exit(1)


def load_app_config() -> AppConfig:
    """
    Load application configuration from YAML file and environment variables.

    Returns:
        AppConfig: The loaded application configuration.
    """
    project_root = _compute_project_root()

    _load_dotenv_files(project_root)

    config = _load_yaml_config(project_root)

    logger = _setup_logger_from_config(config)

    _log_dotenv_status(logger, project_root)

    language_codes = _build_language_mappings(config.get('supported_locales', []))

    dry_run = config.get('dry_run', False)
    proxy_url = os.environ.get('TRANSLATOR_PROXY_URL', config.get('proxy_url', ''))
    model_name = os.environ.get('TRANSLATOR_MODEL_NAME', config.get('model_name', 'gpt-4o-mini'))

    completion_client = _create_completion_client(config, proxy_url, model_name, dry_run, logger)

    return AppConfig(
        proxy_url=proxy_url,
        model_name=model_name,
        temperature=float(config.get('temperature', 0.2)),
        max_tokens=config.get('max_tokens', 800),
        request_timeout=float(config.get('request_timeout', 60.0)),
        max_retries=int(config.get('max_retries', 3)),
        retry_base_delay=float(config.get('retry_base_delay', 1.0)),
        requests_per_minute=int(config.get('requests_per_minute', 60)),
        prompt_template=config.get('prompt_template') or DEFAULT_PROMPT_TEMPLATE,
        translation_fields=config.get('translation_fields', list(DEFAULT_TRANSLATION_FIELDS)),
        excluded_field_ids=[str(field_id) for field_id in config.get('excluded_field_ids', [])],
        language_codes=language_codes,
        batch_char_limit=int(config.get('batch_char_limit', 4800)),
        batch_concurrency=int(config.get('batch_concurrency', 2)),
        chunk_size=int(config.get('chunk_size', 3000)),
        chunk_concurrency=int(config.get('chunk_concurrency', 2)),
        chunk_pacing_seconds=float(config.get('chunk_pacing_seconds', 0.08)),
        max_depth=int(config.get('max_depth', 8)),
        concurrency=int(config.get('concurrency', 3)),
        job_pacing_seconds=float(config.get('job_pacing_seconds', 0.06)),
        write_debounce_seconds=float(config.get('write_debounce_seconds', 0.25)),
        write_pacing_seconds=float(config.get('write_pacing_seconds', 0.08)),
        dry_run=dry_run,
        completion_client=completion_client
    )
