"""
Clinic Core - Command Line

Inspect capability decisions and watch change feeds against a configured
clinic backend.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from .bootstrap import ClinicCore
from .config import create_default_config, load_config
from .core.auth import Actor, CheckOutcome, Role
from .realtime.base import ChangeEvent, ChangeHandlers, SubscriptionTopic

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_CODES = {
    CheckOutcome.ALLOW: 0,
    CheckOutcome.DENY: 1,
    CheckOutcome.UNKNOWN: 2,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clinicore",
        description="Clinic capability resolution and change-feed tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Is a receptionist allowed to book appointments?
  python -m clinicore check --role receptionist --capability create_appointments

  # List a role's effective capabilities
  python -m clinicore capabilities --role doctor

  # Stream appointment changes for one doctor
  python -m clinicore watch appointments --filter doctor_id=eq.42

  # Write a default clinic.yaml
  python -m clinicore init-config
"""
    )
    parser.add_argument('--config', '-c', help='Path to clinic.yaml')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    sub = parser.add_subparsers(dest='command', required=True)

    check = sub.add_parser('check', help='Evaluate one capability for a role')
    check.add_argument('--role', required=True, choices=[r.value for r in Role])
    check.add_argument('--capability', required=True)
    check.add_argument('--actor', default='cli', help='Actor id (default: cli)')

    caps = sub.add_parser('capabilities', help='List effective capabilities of a role')
    caps.add_argument('--role', required=True, choices=[r.value for r in Role])

    watch = sub.add_parser('watch', help='Print change events for a table')
    watch.add_argument('table')
    watch.add_argument('--filter', help='postgres_changes filter, e.g. doctor_id=eq.42')
    watch.add_argument('--seconds', type=float, help='Stop after this many seconds')

    sub.add_parser('status', help='Probe backend reachability')
    sub.add_parser('seed', help='Mirror the static catalog into the override tables')

    init = sub.add_parser('init-config', help='Write a default clinic.yaml')
    init.add_argument('--output', '-o', help='Output path (default: ./clinic.yaml)')

    return parser


async def cmd_check(core: ClinicCore, args) -> int:
    actor = Actor(actor_id=args.actor, role=Role(args.role))
    snapshot = await core.resolve(actor)
    outcome = core.evaluate(actor, args.capability)

    print(json.dumps({
        "role": args.role,
        "capability": args.capability,
        "outcome": outcome.value,
        "resolution": snapshot.status.value,
    }))
    return EXIT_CODES[outcome]


async def cmd_capabilities(core: ClinicCore, args) -> int:
    actor = Actor(actor_id="cli", role=Role(args.role))
    snapshot = await core.resolve(actor)
    if not snapshot.is_available:
        print(f"Capabilities unavailable ({snapshot.status.value}): {snapshot.error or '-'}")
        return EXIT_CODES[CheckOutcome.UNKNOWN]

    for name in sorted(core.resolver.capabilities(actor)):
        print(name)
    return 0


async def cmd_watch(core: ClinicCore, args) -> int:
    def show(event: ChangeEvent) -> None:
        print(json.dumps({
            "kind": event.kind.value,
            "table": event.topic.resource,
            "record": event.record,
            "old_record": event.old_record,
            "commit_timestamp": event.commit_timestamp,
        }, default=str), flush=True)

    def degraded(topic: SubscriptionTopic, error: Exception) -> None:
        print(f"Subscription to {topic} degraded: {error}", file=sys.stderr)

    handlers = ChangeHandlers(on_insert=show, on_update=show, on_delete=show, on_degraded=degraded)
    topic = SubscriptionTopic(args.table, args.filter)

    async with core.subscriptions.subscription(topic, handlers) as handle:
        logger.info(f"Watching {topic} ({handle.state.value}); Ctrl-C to stop")
        if args.seconds:
            await asyncio.sleep(args.seconds)
        else:
            await asyncio.Event().wait()
    return 0


async def cmd_status(core: ClinicCore, args) -> int:
    reachable: Optional[bool] = None
    if core.probe:
        reachable = await core.probe.probe_once()

    print(json.dumps({
        "connectivity": core.current_state().value,
        "probed": reachable is not None,
        "backend": core.config.supabase.url or "in-memory",
    }))
    return 0 if reachable in (None, True) else 1


async def cmd_seed(core: ClinicCore, args) -> int:
    core.monitor.require_online("seeding permissions")
    created = await core.store.seed_defaults(core.catalog)
    print(json.dumps(created))
    return 0


COMMANDS = {
    'check': cmd_check,
    'capabilities': cmd_capabilities,
    'watch': cmd_watch,
    'status': cmd_status,
    'seed': cmd_seed,
}


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command == 'init-config':
        path = create_default_config(args.output)
        print(f"Wrote {path}")
        return 0

    config = load_config(args.config)
    if not args.debug:
        logging.getLogger().setLevel(config.log_level)

    core = await ClinicCore.from_config(config)
    try:
        return await COMMANDS[args.command](core, args)
    finally:
        await core.stop()


def run():
    """Entry point for console script"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == '__main__':
    run()
