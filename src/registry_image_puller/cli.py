"""Command line entry point."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from aiohttp import web

from .core.types import SUPPORTED_ARCHITECTURES, RegistryConfig
from .exceptions import RegistryError
from .logs import configure_logging
from .pull import pull_image
from .settings import Settings, load_settings
from .tar.models import HashVerification
from .web import create_app


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="registry-image-puller",
        description="Download an image from a Docker registry as a `docker load` tar.",
    )
    parser.add_argument("image", nargs="?", help="Image name, optionally with :tag")
    parser.add_argument("--tag", "-t", help="Tag (overrides a tag given with the image)")
    parser.add_argument(
        "--arch",
        "-a",
        default="amd64",
        choices=SUPPORTED_ARCHITECTURES,
        help="Architecture to download (default: amd64)",
    )
    parser.add_argument("--os", default="linux", help="Operating system (default: linux)")
    parser.add_argument("--output", "-o", type=Path, help="Download directory")
    parser.add_argument("--registry", "-r", help="Registry URL")
    parser.add_argument("--auth-url", help="Token service URL ('' disables auth)")
    parser.add_argument("--service", help="Token service name")
    parser.add_argument("--log-file", type=Path, help="Append the pull log to this file")
    parser.add_argument(
        "--save-cache",
        action="store_true",
        help="Do not delete the working directory after a successful build",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug output")
    parser.add_argument(
        "--serve", action="store_true", help="Run the HTTP progress/download service"
    )
    parser.add_argument("--host", default="127.0.0.1", help="Bind address for --serve")
    parser.add_argument("--port", type=int, default=8080, help="Port for --serve")
    return parser


def apply_arguments(settings: Settings, args: argparse.Namespace) -> Settings:
    """Override environment settings with explicit command line flags."""
    registry = settings.registry
    settings.registry = RegistryConfig(
        url=args.registry or registry.url,
        auth_url=registry.auth_url if args.auth_url is None else args.auth_url,
        service=args.service or registry.service,
        timeout=registry.timeout,
        blob_timeout=registry.blob_timeout,
        default_namespace=registry.default_namespace,
    )
    if args.output:
        settings.download_dir = args.output
    if args.log_file:
        settings.log_file = args.log_file
    return settings


def serve(settings: Settings, host: str, port: int) -> None:
    web.run_app(create_app(settings), host=host, port=port)


def main(argv: list[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    settings = apply_arguments(load_settings(), args)
    configure_logging(
        settings.log_file, logging.DEBUG if args.verbose else logging.INFO
    )

    if args.serve:
        serve(settings, args.host, args.port)
        return 0

    if not args.image:
        parser.error("an image name is required unless --serve is given")

    try:
        result = asyncio.run(
            pull_image(
                args.image,
                tag=args.tag,
                architecture=args.arch,
                os=args.os,
                download_dir=settings.download_dir,
                config=settings.registry,
                keep_work_dir=args.save_cache,
            )
        )
    except RegistryError as e:
        print(f"Download failed: {e}", file=sys.stderr)
        print(f"See {settings.log_file} for details.", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Download interrupted.", file=sys.stderr)
        return 1

    print(f"Image downloaded: {result.output_path} ({round(result.size / 1024 / 1024, 2)} MB)")
    for layer in result.layers:
        if layer.verification is HashVerification.MISMATCHED:
            print(f"  warning: layer {layer.index} does not match {layer.diff_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
