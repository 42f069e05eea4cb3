"""build-witness CLI: keygen, build, verify, attest."""

import argparse
import json
import logging
import sys
from importlib.metadata import PackageNotFoundError, version as get_version
from pathlib import Path

from .attest import DEFAULT_ATTEST_KEY_ID, attest_bundle
from .build import (
    DEFAULT_BUILDER_KEY_ID,
    DEFAULT_BUNDLE_DIR,
    DEFAULT_OUTPUT_DIR,
    BuildOptions,
    run_build,
)
from .errors import ConfigurationError, WitnessError
from .policy import load_policy
from .sign import SECRET_KEY_ENV, load_secret_key, write_keypair
from .summary import format_bundle_summary
from .verify import Verdict, verify_bundle

logger = logging.getLogger("build_witness")


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    try:
        witness_version = get_version("build-witness")
    except PackageNotFoundError:
        witness_version = "dev"

    parser = argparse.ArgumentParser(
        prog="build-witness",
        description="Produce and verify signed build witness bundles",
    )
    parser.add_argument("--version", action="version", version=f"build-witness {witness_version}")
    parent_parser = argparse.ArgumentParser(add_help=False)
    parent_parser.add_argument("--quiet", action="store_true", help="Only log warnings and errors.")
    parent_parser.add_argument("--verbose", action="store_true", help="Log debug detail.")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    keygen_parser = subparsers.add_parser(
        "keygen",
        help="Generate an Ed25519 keypair for build signing",
        parents=[parent_parser],
    )
    keygen_parser.add_argument(
        "--output",
        type=Path,
        default=Path("."),
        help="Directory for the key files (default: current directory)",
    )

    build_parser = subparsers.add_parser(
        "build",
        help="Run a build command and write a witness bundle",
        parents=[parent_parser],
    )
    build_parser.add_argument("--project", default=None, help="Project name (default: directory name)")
    build_parser.add_argument(
        "--output-dir",
        default=DEFAULT_OUTPUT_DIR,
        help=f"Build output directory to witness (default: {DEFAULT_OUTPUT_DIR})",
    )
    build_parser.add_argument(
        "--keyfile",
        type=Path,
        default=None,
        help=f"Ed25519 secret key file (or set {SECRET_KEY_ENV})",
    )
    build_parser.add_argument(
        "--key-id",
        default=DEFAULT_BUILDER_KEY_ID,
        help=f"Builder key identifier (default: {DEFAULT_BUILDER_KEY_ID})",
    )
    build_parser.add_argument(
        "--policy",
        type=Path,
        default=None,
        help=f"Policy file (default: {DEFAULT_BUNDLE_DIR}/policy.json)",
    )
    build_parser.add_argument(
        "--bundle",
        type=Path,
        default=Path(DEFAULT_BUNDLE_DIR),
        help=f"Bundle directory to write (default: {DEFAULT_BUNDLE_DIR})",
    )
    build_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Build command, after --")

    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify a witness bundle",
        parents=[parent_parser],
    )
    verify_parser.add_argument(
        "--bundle",
        type=Path,
        default=Path(DEFAULT_BUNDLE_DIR),
        help=f"Bundle directory (default: {DEFAULT_BUNDLE_DIR})",
    )
    verify_parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help=(
            "Directory artifact paths are relative to "
            "(default: the project root recorded in the bundle, else the current directory)"
        ),
    )
    verify_parser.add_argument(
        "--policy",
        type=Path,
        default=None,
        help="Check co-signatures and compliance against this policy instead of the bundled one",
    )
    verify_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    attest_parser = subparsers.add_parser(
        "attest",
        help="Add a maintainer co-signature to a bundle",
        parents=[parent_parser],
    )
    attest_parser.add_argument(
        "--bundle",
        type=Path,
        default=Path(DEFAULT_BUNDLE_DIR),
        help=f"Bundle directory (default: {DEFAULT_BUNDLE_DIR})",
    )
    attest_parser.add_argument(
        "--keyfile",
        type=Path,
        default=None,
        help=f"Ed25519 secret key file (or set {SECRET_KEY_ENV})",
    )
    attest_parser.add_argument(
        "--key-id",
        default=DEFAULT_ATTEST_KEY_ID,
        help=f"Co-signer key identifier (default: {DEFAULT_ATTEST_KEY_ID})",
    )

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    _configure_logging(args)

    handlers = {
        "keygen": _cmd_keygen,
        "build": _cmd_build,
        "verify": _cmd_verify,
        "attest": _cmd_attest,
    }
    try:
        return handlers[args.command](args)
    except WitnessError as exc:
        logger.error("%s", exc)
        return 1


def _configure_logging(args: argparse.Namespace) -> None:
    level = logging.INFO
    if args.quiet:
        level = logging.WARNING
    elif args.verbose:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="[witness] %(message)s", stream=sys.stderr)
    logger.setLevel(level)


def _cmd_keygen(args: argparse.Namespace) -> int:
    sk_path, pk_path, public_key = write_keypair(args.output)
    logger.info("Ed25519 keypair generated:")
    logger.info("  Secret key: %s", sk_path)
    logger.info("  Public key: %s", pk_path)
    print(public_key)
    return 0


def _cmd_build(args: argparse.Namespace) -> int:
    command = list(args.cmd)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        raise ConfigurationError("No build command given; pass it after --")

    options = BuildOptions(
        root=Path("."),
        project=args.project,
        output_dir=args.output_dir,
        bundle_dir=args.bundle,
        policy_path=args.policy,
        keyfile=args.keyfile,
        key_id=args.key_id,
        echo=not args.quiet,
    )
    result = run_build(command, options)
    print(format_bundle_summary(result.manifest.to_dict()))
    return 0


def _cmd_verify(args: argparse.Namespace) -> int:
    policy_override = None
    if args.policy is not None:
        if not args.policy.exists():
            raise ConfigurationError(f"Policy file {args.policy} does not exist")
        policy_override = load_policy(args.policy)

    report = verify_bundle(args.bundle, artifact_root=args.root, policy_override=policy_override)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    else:
        if report.manifest is not None:
            print(format_bundle_summary(report.manifest))
        print(report.verdict.label)
        for error in report.errors:
            print(f"  ERROR [{error.code.value}] {error.message}")
        for warning in report.warnings:
            print(f"  WARNING [{warning.code.value}] {warning.message}")

    return 1 if report.verdict is Verdict.UNVERIFIED else 0


def _cmd_attest(args: argparse.Namespace) -> int:
    secret_key = load_secret_key(args.keyfile)
    sig_path = attest_bundle(args.bundle, secret_key, args.key_id)
    print(sig_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
