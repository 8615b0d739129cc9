#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
import warnings
from pathlib import Path

from . import APP_NAME, get_version
from .client import Client, RemoteError, ServerUnavailableError
from .editor import EditorError, edit_text
from .engine import GenerationOptions, MLXEngine
from .languages import DEFAULT_INPUT_LANG, DEFAULT_OUTPUT_LANG, normalize_lang
from .prompt_templates import DEFAULT_MODEL, resolve_model_alias, resolve_template
from .prompts import prepare_prompts
from .protocol import ProtocolError
from .server import TranslationService
from .socket_file import SocketFile, SocketFileError, socket_filename

SOCKET_ENV = "VSOP_SOCKET"


def build_server_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vsops",
        description=(
            "Translation server: keeps an MLX model loaded and serves "
            "translation requests from vsop over a Unix domain socket."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument(
        "-m",
        "--model",
        type=str,
        default=DEFAULT_MODEL,
        help=f"MLX model repo or alias (default: {DEFAULT_MODEL}). Aliases: cat, plamo.",
    )
    parser.add_argument(
        "--model-dir",
        type=Path,
        default=None,
        help="Load the model from this local directory instead of --model.",
    )
    parser.add_argument(
        "--socket-file",
        type=str,
        default=None,
        help=(
            "Unix domain socket path "
            f"(default: ${SOCKET_ENV} or <data dir>/{APP_NAME}.socket)."
        ),
    )
    parser.add_argument(
        "--input-lang",
        help=f"Input language (en/ja/auto). Default: {DEFAULT_INPUT_LANG}.",
    )
    parser.add_argument(
        "--output-lang",
        help=f"Output language (en/ja). Default: {DEFAULT_OUTPUT_LANG}.",
    )
    parser.add_argument(
        "--max-new-tokens",
        type=int,
        default=None,
        help="Maximum number of new tokens to generate per unit.",
    )
    parser.add_argument(
        "--no-repeat-ngram",
        type=int,
        default=None,
        help="Ban repeating n-grams within the recent window.",
    )
    parser.add_argument(
        "--no-repeat-window",
        type=int,
        default=None,
        help="Recent token window for no-repeat n-gram.",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=None,
        help="Sampling temperature. 0 disables sampling.",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=None,
        help="Top-p sampling value.",
    )
    parser.add_argument(
        "--top-k",
        type=int,
        default=None,
        help="Top-k sampling value.",
    )
    parser.add_argument(
        "--no-chat-template",
        action="store_true",
        default=None,
        help="Disable chat template even if the tokenizer provides one.",
    )
    parser.add_argument(
        "--trust-remote-code",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Trust remote code when loading tokenizers.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging and download progress output.",
    )
    return parser


def build_client_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vsop",
        description=(
            "Client for vsops. Opens $EDITOR (default: nano) and sends the "
            "written text to the translation server, unless --file or --stdin "
            "is given."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "-f",
        "--file",
        type=Path,
        default=None,
        help="Read source text from the specified file.",
    )
    source.add_argument(
        "-s",
        "--stdin",
        action="store_true",
        help="Read source text from standard input.",
    )
    parser.add_argument(
        "--socket-file",
        type=str,
        default=None,
        help=(
            "Unix domain socket path "
            f"(default: ${SOCKET_ENV} or <data dir>/{APP_NAME}.socket)."
        ),
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up if the server does not answer within this many seconds.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    return parser


def configure_logging(verbose: bool) -> None:
    if verbose:
        return
    os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
    os.environ.setdefault("HF_HUB_DISABLE_TELEMETRY", "1")
    from huggingface_hub.utils import logging as hf_logging

    hf_logging.set_verbosity_error()
    disable = getattr(hf_logging, "disable_progress_bars", None)
    if callable(disable):
        disable()
    warnings.filterwarnings(
        "ignore",
        message=r"(?s).*mx\.metal\.device_info.*",
    )


def resolve_socket_path(value: str | None) -> Path:
    if value:
        return Path(value).expanduser()
    env = os.environ.get(SOCKET_ENV)
    if env:
        return Path(env).expanduser()
    return socket_filename(APP_NAME)


def resolve_language_pair(args: argparse.Namespace) -> tuple[str | None, str | None]:
    """Return the server's language pair; None on a side means "infer"."""
    if args.input_lang is None and args.output_lang is None:
        return DEFAULT_INPUT_LANG, DEFAULT_OUTPUT_LANG
    input_lang = normalize_lang(args.input_lang)
    output_lang = normalize_lang(args.output_lang)
    if input_lang is not None and input_lang == output_lang:
        raise ValueError("Input and output languages must be different.")
    return input_lang, output_lang


def resolve_model_name(args: argparse.Namespace) -> str:
    if args.model_dir is not None:
        return str(args.model_dir.expanduser())
    return resolve_model_alias(args.model, DEFAULT_MODEL)


def build_generation_options(
    args: argparse.Namespace, model_name: str
) -> GenerationOptions:
    return GenerationOptions.resolve(
        resolve_template(model_name),
        max_new_tokens=args.max_new_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        top_k=args.top_k,
        no_repeat_ngram=args.no_repeat_ngram,
        no_repeat_window=args.no_repeat_window,
        no_chat_template=args.no_chat_template,
    )


def install_signal_handlers(cancel: threading.Event) -> None:
    def _handler(signum: int, frame: object) -> None:
        if not cancel.is_set():
            sys.stderr.write(f"[INFO] Received signal {signum}, shutting down...\n")
        cancel.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def server_main(argv: list[str] | None = None) -> int:
    args = build_server_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        input_lang, output_lang = resolve_language_pair(args)
    except ValueError as exc:
        raise SystemExit(str(exc))
    model_name = resolve_model_name(args)
    options = build_generation_options(args, model_name)

    try:
        socket_file = SocketFile.acquire(resolve_socket_path(args.socket_file))
    except SocketFileError as exc:
        sys.stderr.write(f"[ERROR] Cannot use socket file: {exc}\n")
        return 1

    with socket_file:
        if args.verbose:
            sys.stderr.write(f"[INFO] Loading model {model_name}\n")
        try:
            engine = MLXEngine(
                model_name,
                input_lang=input_lang,
                output_lang=output_lang,
                options=options,
                trust_remote_code=args.trust_remote_code,
            )
        except Exception as exc:
            sys.stderr.write(f"[ERROR] Failed to load model {model_name}: {exc}\n")
            return 1

        cancel = threading.Event()
        install_signal_handlers(cancel)
        try:
            TranslationService(engine).serve(socket_file, cancel)
        except OSError as exc:
            sys.stderr.write(f"[ERROR] Failed to serve on {socket_file}: {exc}\n")
            return 1
    return 0


def read_source(args: argparse.Namespace) -> str:
    if args.file is not None:
        return args.file.read_text(encoding="utf-8")
    if args.stdin:
        return sys.stdin.read()
    return edit_text()


def main(argv: list[str] | None = None) -> int:
    args = build_client_parser().parse_args(argv)
    try:
        text = read_source(args)
    except EditorError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    except OSError as exc:
        sys.stderr.write(f"Failed to read source text: {exc}\n")
        return 1
    if not text.strip():
        sys.stderr.write("No input text provided.\n")
        return 1
    units = prepare_prompts(text)

    try:
        socket_path = resolve_socket_path(args.socket_file)
    except SocketFileError as exc:
        sys.stderr.write(f"Cannot resolve socket file: {exc}\n")
        return 1

    try:
        with Client.connect(socket_path, timeout=args.timeout) as client:
            if args.verbose:
                sys.stderr.write(f"[INFO] Translating {len(units)} units via {socket_path}\n")
            results = client.translate(units)
    except ServerUnavailableError as exc:
        sys.stderr.write(f"Server is not reachable at {exc.path}: {exc.reason}\n")
        return 1
    except RemoteError as exc:
        sys.stderr.write(f"Translation failed: {exc}\n")
        return 1
    except ProtocolError as exc:
        sys.stderr.write(f"Invalid response from server: {exc}\n")
        return 1
    except OSError as exc:
        sys.stderr.write(f"Communication error: {exc}\n")
        return 1

    for result in results:
        print(result.strip())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
