#!/usr/bin/env python3
"""
Command-line interface for agent-memlayer.

Usage:
    memlayer init
    memlayer stats
    memlayer status <session_id>
    memlayer turns <session_id> -n 10
    memlayer assemble <session_id> --budget 2000
    memlayer snapshots <session_id> --kind session_summary
    memlayer profile <contact_ref>
    memlayer notes add contact +4915112345 "Prefers email" --priority high
    memlayer notes list
    memlayer notes unpin <note_id>
    memlayer consents list --status pending
    memlayer consents accept <consent_id>
    memlayer consents sweep
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from .config import EngineConfig
from .engine import MemoryEngine
from .errors import MemlayerError
from .types import ConsentStatus, NoteCategory, NotePriority, NoteTarget, SnapshotKind


def _engine(args) -> MemoryEngine:
    return MemoryEngine(args.config)


def _close(engine: MemoryEngine):
    asyncio.run(engine.close())


def cmd_init(args):
    """Create a config file and the database."""
    config_path = Path(args.output or "memlayer.yaml")

    if config_path.exists() and not args.force:
        print(f"Config already exists: {config_path}")
        print("Use --force to overwrite.")
        return

    config = EngineConfig.default(".")
    config.save(str(config_path))
    print(f"✓ Created config: {config_path}")

    engine = MemoryEngine(config)
    print(f"✓ Database ready: {engine.store.db_path}")
    _close(engine)


def cmd_stats(args):
    """Show store statistics."""
    engine = _engine(args)
    stats = engine.stats()
    print(f"Database: {stats['db_path']}")
    print(f"Sessions: {stats['sessions']}")
    print(f"Turns: {stats['turns']}")
    print(f"Snapshots: {stats['snapshots']}")
    print(f"Notes: {stats['operator_notes']}")
    print(f"Profiles: {stats['contact_memory']}")
    consents = stats["consents"]
    if consents:
        print("Consents: " + ", ".join(f"{k}={v}" for k, v in sorted(consents.items())))
    else:
        print("Consents: 0")

    event_stats = engine.event_log.get_summary_stats(hours=args.hours)
    if engine.event_log.enabled:
        print(f"\nLast {args.hours}h: {event_stats['summaries_written']} summaries written, "
              f"{event_stats['summaries_failed']} failed, {event_stats['stale_rejected']} stale")
    _close(engine)


def cmd_status(args):
    """Show scheduling state for a session."""
    engine = _engine(args)
    session = engine.get_session(args.session)
    if session is None:
        print(f"✗ Session not found: {args.session}")
        _close(engine)
        sys.exit(1)
    for key, value in engine.status(args.session).items():
        print(f"{key:<24} {value}")
    _close(engine)


def cmd_turns(args):
    """Print the recent transcript of a session."""
    engine = _engine(args)
    text = engine.format_recent(args.session, args.limit)
    print(text or "No turns.")
    _close(engine)


def cmd_assemble(args):
    """Assemble context for a session."""
    engine = _engine(args)
    try:
        result = engine.assemble(args.session, args.budget)
    except MemlayerError as e:
        print(f"✗ {e}")
        _close(engine)
        sys.exit(1)

    if args.json:
        print(json.dumps({
            "text": result.text,
            "tokens_estimate": result.tokens_estimate,
            "budget": result.budget,
            "layers_included": [k.value for k in result.layers_included],
            "layers_omitted": result.layers_omitted,
            "recent_turns_included": result.recent_turns_included,
            "notes_truncated": result.notes_truncated,
            "notes_dropped": result.notes_dropped,
        }, indent=2))
    else:
        print(f"Context ({result.tokens_estimate}/{result.budget} tokens, "
              f"{result.utilization * 100:.0f}%)")
        print("=" * 60)
        print(result.text)
        print("=" * 60)
        print("Included: " + ", ".join(k.value for k in result.layers_included))
        if result.layers_omitted:
            print("Omitted: " + ", ".join(f"{k} ({v})" for k, v in result.layers_omitted.items()))
    _close(engine)


def cmd_snapshots(args):
    """List the snapshot history of a session."""
    engine = _engine(args)
    kind = SnapshotKind(args.kind) if args.kind else None
    snapshots = engine.list_snapshots(args.session, kind)
    if not snapshots:
        print("No snapshots.")
    for s in snapshots:
        print(f"[{s.created_at.isoformat()[:19]}] {s.kind.value} @ {s.message_count_at_snapshot} turns")
        content = s.content if isinstance(s.content, str) else json.dumps(s.content)
        print(f"  {content[:200]}")
    _close(engine)


def cmd_profile(args):
    """Show a contact profile."""
    engine = _engine(args)
    profile = engine.read_contact_memory(args.contact)
    if profile is None:
        print("No profile.")
    else:
        print(json.dumps(profile.to_dict(), indent=2))
    _close(engine)


def cmd_notes_add(args):
    engine = _engine(args)
    note = engine.add_note(
        NoteTarget(args.target_type),
        args.target_id,
        args.content,
        category=NoteCategory(args.category),
        priority=NotePriority(args.priority),
        pinned=not args.unpinned,
    )
    print(f"✓ Added note {note.id}")
    _close(engine)


def cmd_notes_list(args):
    engine = _engine(args)
    notes = engine.list_notes(include_expired=args.all)
    if not notes:
        print("No notes.")
    else:
        print(f"{'ID':<34} {'Target':<28} {'Prio':<7} {'Pin':<4} Content")
        print("-" * 100)
        for n in notes:
            target = f"{n.target_type.value}:{n.target_id}"
            pin = "yes" if n.pinned else "no"
            print(f"{n.id:<34} {target[:27]:<28} {n.priority.value:<7} {pin:<4} {n.content[:40]}")
    _close(engine)


def cmd_notes_unpin(args):
    engine = _engine(args)
    if engine.unpin_note(args.note_id):
        print(f"✓ Unpinned {args.note_id}")
    else:
        print(f"✗ Note not found: {args.note_id}")
    _close(engine)


def cmd_consents_list(args):
    engine = _engine(args)
    status = ConsentStatus(args.status) if args.status else None
    consents = engine.list_consents(contact_ref=args.contact, status=status)
    if not consents:
        print("No consents.")
    for c in consents:
        print(f"{c.id}  {c.status.value:<9} {c.contact_ref}  "
              f"{c.fact.type.value}: {c.fact.value} ({c.fact.confidence:.2f})")
    _close(engine)


def _resolve(args, accepted: bool):
    engine = _engine(args)
    try:
        consent = engine.resolve_consent(args.consent_id, accepted)
        print(f"✓ Consent {consent.id} {consent.status.value}")
    except MemlayerError as e:
        print(f"✗ {e}")
        _close(engine)
        sys.exit(1)
    _close(engine)


def cmd_consents_accept(args):
    _resolve(args, True)


def cmd_consents_decline(args):
    _resolve(args, False)


def cmd_consents_sweep(args):
    engine = _engine(args)
    expired = engine.gate.expire_stale()
    print(f"✓ Expired {expired} consents")
    _close(engine)


def main():
    parser = argparse.ArgumentParser(
        description="Bounded-context memory for conversational agents",
        prog="memlayer"
    )
    parser.add_argument(
        "-c", "--config",
        default="memlayer.yaml",
        help="Path to config file (default: memlayer.yaml)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    p_init = subparsers.add_parser("init", help="Initialize config and database")
    p_init.add_argument("-o", "--output", help="Config output path")
    p_init.add_argument("-f", "--force", action="store_true", help="Overwrite existing config")
    p_init.set_defaults(func=cmd_init)

    # stats
    p_stats = subparsers.add_parser("stats", help="Show statistics")
    p_stats.add_argument("--hours", type=int, default=24, help="Event log window")
    p_stats.set_defaults(func=cmd_stats)

    # status
    p_status = subparsers.add_parser("status", help="Show session scheduling state")
    p_status.add_argument("session", help="Session ID")
    p_status.set_defaults(func=cmd_status)

    # turns
    p_turns = subparsers.add_parser("turns", help="Show recent turns")
    p_turns.add_argument("session", help="Session ID")
    p_turns.add_argument("-n", "--limit", type=int, default=None, help="Max turns")
    p_turns.set_defaults(func=cmd_turns)

    # assemble
    p_assemble = subparsers.add_parser("assemble", help="Assemble context for a session")
    p_assemble.add_argument("session", help="Session ID")
    p_assemble.add_argument("-b", "--budget", type=int, default=2000, help="Token budget")
    p_assemble.add_argument("--json", action="store_true", help="Output as JSON")
    p_assemble.set_defaults(func=cmd_assemble)

    # snapshots
    p_snap = subparsers.add_parser("snapshots", help="Show snapshot history")
    p_snap.add_argument("session", help="Session ID")
    p_snap.add_argument("--kind", choices=[k.value for k in SnapshotKind], help="Snapshot kind")
    p_snap.set_defaults(func=cmd_snapshots)

    # profile
    p_profile = subparsers.add_parser("profile", help="Show a contact profile")
    p_profile.add_argument("contact", help="Contact reference")
    p_profile.set_defaults(func=cmd_profile)

    # notes
    p_notes = subparsers.add_parser("notes", help="Operator notes")
    notes_sub = p_notes.add_subparsers(dest="notes_command")

    p_nadd = notes_sub.add_parser("add", help="Add a note")
    p_nadd.add_argument("target_type", choices=[t.value for t in NoteTarget])
    p_nadd.add_argument("target_id")
    p_nadd.add_argument("content")
    p_nadd.add_argument("--category", default="context", choices=[c.value for c in NoteCategory])
    p_nadd.add_argument("--priority", default="medium", choices=[p.value for p in NotePriority])
    p_nadd.add_argument("--unpinned", action="store_true", help="Store without pinning")
    p_nadd.set_defaults(func=cmd_notes_add)

    p_nlist = notes_sub.add_parser("list", help="List notes")
    p_nlist.add_argument("--all", action="store_true", help="Include expired notes")
    p_nlist.set_defaults(func=cmd_notes_list)

    p_nunpin = notes_sub.add_parser("unpin", help="Unpin a note")
    p_nunpin.add_argument("note_id")
    p_nunpin.set_defaults(func=cmd_notes_unpin)

    # consents
    p_consents = subparsers.add_parser("consents", help="Memory consents")
    consents_sub = p_consents.add_subparsers(dest="consents_command")

    p_clist = consents_sub.add_parser("list", help="List consents")
    p_clist.add_argument("--contact", help="Contact reference")
    p_clist.add_argument("--status", choices=[s.value for s in ConsentStatus])
    p_clist.set_defaults(func=cmd_consents_list)

    p_caccept = consents_sub.add_parser("accept", help="Accept a consent")
    p_caccept.add_argument("consent_id")
    p_caccept.set_defaults(func=cmd_consents_accept)

    p_cdecline = consents_sub.add_parser("decline", help="Decline a consent")
    p_cdecline.add_argument("consent_id")
    p_cdecline.set_defaults(func=cmd_consents_decline)

    p_csweep = consents_sub.add_parser("sweep", help="Expire stale consents")
    p_csweep.set_defaults(func=cmd_consents_sweep)

    args = parser.parse_args()

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
