from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from threading import Event

from ukfleet import db
from ukfleet.compose import load_project
from ukfleet.errors import FleetError
from ukfleet.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _components():
    """(platforms, networks, packages, builder) backed by the local Docker daemon."""
    from ukfleet.docker_ops import DockerBuilder, DockerNetworkDriver, DockerPackageManager, default_registry

    return default_registry(), DockerNetworkDriver(), DockerPackageManager(), DockerBuilder()


def _stop_on_signals() -> Event:
    stop = Event()

    def _handler(signum, frame) -> None:
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    return stop


def cmd_up(args: argparse.Namespace) -> int:
    from ukfleet.reconciler import Reconciler
    from ukfleet.resolver import ArtifactResolver

    platforms, networks, packages, builder = _components()
    project = load_project(os.getcwd(), args.file)
    db.log_event("DEBUG", f"using {project.compose_files[0]}", project=project.name)

    reconciler = Reconciler(
        platforms,
        networks,
        ArtifactResolver(packages, builder),
        follow_logs=not args.detach,
    )
    result = reconciler.up(project, stop=_stop_on_signals())

    for name in result.launched:
        print(f"{name}: launched")
    for name in result.skipped:
        print(f"{name}: already running")
    for name, err in result.failed.items():
        print(f"{name}: failed ({err})", file=sys.stderr)

    if args.strict and not result.ok:
        return 1
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    from ukfleet.watcher import Watcher, pidfile

    platforms, _, _, _ = _components()
    if args.plat in ("", "auto"):
        _, driver = platforms.detect()
    else:
        driver = platforms.get(args.plat)

    with pidfile() as owned:
        if not owned:
            db.log_event("WARN", f"pid file {settings.events_pidfile} exists; another monitor may be running")
        Watcher(driver).watch(
            machine_filter=args.machine or "",
            poll_interval=args.granularity,
            quit_together=args.quit_together,
            stop=_stop_on_signals(),
        )
    return 0


def cmd_push(args: argparse.Namespace) -> int:
    from ukfleet.resolver import push_packages

    _, _, packages, _ = _components()
    pushed = push_packages(packages, args.ref)
    _print([p.ref for p in pushed])
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    _print(db.latest_events(args.limit))
    return 0


def cmd_ps(args: argparse.Namespace) -> int:
    platforms, _, _, _ = _components()
    names = platforms.names() if args.plat in ("", "all") else [args.plat]
    out = []
    for name in names:
        out.extend(asdict(m) for m in platforms.get(name).list())
    _print(out)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from ukfleet.api import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Unikernel fleet reconciler CLI")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_up = sub.add_parser(
        "up",
        help="Create networks and run the services of a compose project",
        epilog="Services run on the Docker backend, registered as platform 'docker': "
               "declare e.g. platform: docker/x86_64 in the compose file.",
    )
    s_up.add_argument("-f", "--file", default=None, help="Alternate compose file")
    s_up.add_argument("-d", "--detach", action="store_true", help="Do not follow service logs")
    s_up.add_argument("--strict", action="store_true", help="Exit non-zero when any service fails")
    s_up.set_defaults(func=cmd_up)

    s_watch = sub.add_parser("watch", help="Follow machine lifecycle events")
    s_watch.add_argument("machine", nargs="?", help="Machine id or name (default: all)")
    s_watch.add_argument("-g", "--poll-granularity", dest="granularity", type=float, default=settings.poll_interval_s,
                         help="Seconds between machine store polls")
    s_watch.add_argument("-q", "--quit-together", action="store_true", help="Exit when no machine is left to observe")
    s_watch.add_argument("-p", "--plat", default="auto", help="Platform driver (default: auto-detect)")
    s_watch.set_defaults(func=cmd_watch)

    s_push = sub.add_parser("push", help="Push local packages to their registry")
    s_push.add_argument("ref", help="Package reference, e.g. org/app:latest")
    s_push.set_defaults(func=cmd_push)

    s_ev = sub.add_parser("events", help="Show the event journal")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.set_defaults(func=cmd_events)

    s_ps = sub.add_parser("ps", help="List machines")
    s_ps.add_argument("-p", "--plat", default="all", help="Platform driver (default: all)")
    s_ps.set_defaults(func=cmd_ps)

    s_serve = sub.add_parser("serve", help="Run the status API")
    s_serve.add_argument("--host", default=settings.api_host)
    s_serve.add_argument("--port", type=int, default=settings.api_port)
    s_serve.set_defaults(func=cmd_serve)

    args = p.parse_args(argv)

    level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)-5s %(message)s")
    db.init_db()

    try:
        return args.func(args)
    except FleetError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
