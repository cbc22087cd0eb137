import argparse
import logging
import sys
from pathlib import Path

from src.adapters.clock import SystemClock
from src.components.handoff import (
    Allowlist,
    DecodeFailureError,
    HandoffConfig,
    NavigationContext,
    ResolveInput,
    UserSnapshot,
    decode_base64_text,
    run_resolve,
    urls_from_state,
)
from src.rules.loader import load_rules_or_default

logger = logging.getLogger("cli")

RULES_PATH = "rules.yaml"


def get_config(rules_path: Path) -> HandoffConfig:
    try:
        rules = load_rules_or_default(rules_path)
    except ValueError as e:
        logger.error("Rules file %s is invalid: %s", rules_path, e)
        sys.exit(2)
    if rules.debug:
        logging.getLogger("src.components.handoff").setLevel(logging.DEBUG)
    return rules.to_config()


def _allowlist(config: HandoffConfig) -> Allowlist:
    return Allowlist(
        config.allowed_domains,
        match_mode=config.match_mode,
        require_https=config.require_https,
    )


def handle_check_url(config: HandoffConfig, args: argparse.Namespace) -> int:
    rejection = _allowlist(config).check(args.url)
    if rejection is None:
        print(f"allowed: {args.url}")
        return 0
    print(f"rejected ({rejection.code}): {rejection.message}")
    return 1


def handle_decode_state(config: HandoffConfig, args: argparse.Namespace) -> int:
    try:
        decoded = decode_base64_text(args.value)
    except DecodeFailureError as e:
        print(f"decode failed: {e}")
        return 1

    print(f"decoded: {decoded}")
    allowlist = _allowlist(config)
    for url in urls_from_state(decoded, config.state_keys, config.platform_domain):
        verdict = "allowed" if allowlist.is_allowed(url) else "rejected"
        print(f" - {url} ({verdict})")
    return 0


def handle_resolve(config: HandoffConfig, args: argparse.Namespace) -> int:
    user = None
    if args.username:
        user = UserSnapshot(id=args.username, username=args.username, created_at=args.created_at)
    context = NavigationContext(url=args.url, referrer=args.referrer, user=user)
    output = run_resolve(ResolveInput(context=context), time=SystemClock(), config=config)

    for rejection in output.rejections:
        channel = rejection.channel.value if rejection.channel else "-"
        print(f"skipped [{channel}] {rejection.code}: {rejection.message}")

    if output.candidate is None:
        print("no candidate")
        return 1
    print(f"candidate: {output.candidate.url} (from {output.candidate.source_label})")
    verdict = "would redirect" if output.would_redirect else "would wait"
    gate = output.gate.value if output.gate else "-"
    print(f"gate: {gate} ({verdict})")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Partner handoff CLI")
    parser.add_argument("--rules", default=RULES_PATH, help="Path to rules.yaml")
    parser.add_argument("--debug", action="store_true", help="Log handoff decisions")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # check-url
    check_parser = subparsers.add_parser("check-url", help="Check a URL against the allowlist")
    check_parser.add_argument("url", help="Absolute destination URL")

    # decode-state
    decode_parser = subparsers.add_parser(
        "decode-state", help="Decode a base64 state value and list the URLs it carries"
    )
    decode_parser.add_argument("value", help="Raw state parameter value")

    # resolve
    resolve_parser = subparsers.add_parser(
        "resolve", help="Show which partner URL a landing page would redirect to"
    )
    resolve_parser.add_argument("url", help="Landing page URL, including its query")
    resolve_parser.add_argument("--referrer", help="Document referrer")
    resolve_parser.add_argument("--username", help="Signed-in username (omit for anonymous)")
    resolve_parser.add_argument("--created-at", help="Account creation time (ISO-8601)")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)
    config = get_config(Path(args.rules))

    if args.command == "check-url":
        return handle_check_url(config, args)
    elif args.command == "decode-state":
        return handle_decode_state(config, args)
    return handle_resolve(config, args)


if __name__ == "__main__":
    sys.exit(main())
