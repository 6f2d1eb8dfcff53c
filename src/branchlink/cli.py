#!/usr/bin/env python3
"""branchlink CLI - ticket/branch associations from the command line."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"branchlink requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="branchlink",
        description="Link issue-tracker tickets to git branches across repositories",
    )
    ap.add_argument("--workspace", "-C", help="Workspace directory (default: current directory)")
    ap.add_argument("--json", action="store_true", help="Machine-readable output")

    sub = ap.add_subparsers(dest="cmd")

    p_assoc = sub.add_parser("associate", help="Associate a ticket with an existing local branch")
    p_assoc.add_argument("ticket")
    p_assoc.add_argument("branch")

    p_remove = sub.add_parser("remove", help="Remove a ticket's association in this repository")
    p_remove.add_argument("ticket")

    p_branch = sub.add_parser("branch", help="Print the branch associated with a ticket")
    p_branch.add_argument("ticket")

    p_status = sub.add_parser("status", help="Association state of a ticket")
    p_status.add_argument("ticket")

    p_checkout = sub.add_parser("checkout", help="Check out a ticket's branch")
    p_checkout.add_argument("ticket")

    p_suggest = sub.add_parser("suggest", help="Suggest unassociated branches for a ticket")
    p_suggest.add_argument("ticket")
    p_suggest.add_argument("--accept", action="store_true", help="Associate the best suggestion")

    p_detect = sub.add_parser("detect", help="Find branches whose names carry ticket identifiers")
    p_detect.add_argument("--apply", action="store_true", help="Associate every detected pair")
    p_detect.add_argument("--current", action="store_true", help="Only the checked-out branch")

    p_start = sub.add_parser("start", help="Check out or create a branch for a ticket and associate it")
    p_start.add_argument("ticket")
    p_start.add_argument("--title", default="", help="Ticket title, used for the branch slug")
    p_start.add_argument("--name", dest="branch_name", help="Explicit branch name")
    p_start.add_argument("--base", dest="base_branch", help="Base branch for a new branch")
    p_start.add_argument("--label", dest="labels", action="append", help="Ticket label (repeatable)")

    p_list = sub.add_parser("list", help="List associations")
    p_list.add_argument("--repo", help="Only associations of the repository at this path")

    p_cleanup = sub.add_parser("cleanup", help="Report (or remove) stale associations")
    p_cleanup.add_argument("--apply", action="store_true", help="Remove stale associations of this repository")

    p_repos = sub.add_parser("repos", help="List known repositories")
    p_repos.add_argument("--stale", action="store_true", help="Only repositories not seen recently")
    p_repos.add_argument(
        "--discover", nargs="?", const="", metavar="DIR",
        help="Register the repositories under DIR (default: registry.parent_dir or the parent directory)",
    )
    p_repos.add_argument("--refresh", action="store_true", help="Identify the current repository again")

    p_prefix = sub.add_parser("prefix", help="Route tickets with these prefixes to the current repository")
    p_prefix.add_argument("prefixes", nargs="*", help="e.g. FE WEB; none clears the routing")

    p_where = sub.add_parser("where", help="Repository a ticket's work belongs in")
    p_where.add_argument("ticket")

    p_history = sub.add_parser("history", help="Branches a ticket (or every ticket) has used")
    p_history.add_argument("ticket", nargs="?")

    sub.add_parser("migrate", help="Copy workspace associations into the global scope")

    return ap


def _association_row(a) -> dict:
    return a.to_dict()


def _emit(args: argparse.Namespace, payload, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    elif text:
        print(text)


async def _run(args: argparse.Namespace) -> int:
    from .engine import BranchLinkEngine

    engine = BranchLinkEngine.create(Path(args.workspace) if args.workspace else Path.cwd())

    if args.cmd == "associate":
        ok = await engine.associate_branch(args.ticket, args.branch)
        _emit(args, {"ok": ok}, f"Associated {args.ticket} -> {args.branch}" if ok else "")
        return 0 if ok else 1

    if args.cmd == "remove":
        ok = await engine.remove_association(args.ticket)
        _emit(args, {"ok": ok}, f"Removed association for {args.ticket}" if ok else "")
        return 0 if ok else 1

    if args.cmd == "branch":
        branch = await engine.get_branch_for_ticket(args.ticket)
        in_repo = await engine.is_ticket_in_current_repo(args.ticket) if branch else False
        _emit(args, {"branch": branch, "in_current_repo": in_repo}, branch or "")
        return 0 if branch else 1

    if args.cmd == "status":
        state = await engine.get_association_status(args.ticket)
        association = await engine.get_global_association_for_ticket(args.ticket)
        payload = {"state": state.value, "association": association.to_dict() if association else None}
        _emit(args, payload, state.value)
        return 0

    if args.cmd == "checkout":
        outcome = await engine.checkout_ticket_branch(args.ticket)
        payload = {
            "status": outcome.status.value,
            "branch": outcome.branch,
            "repository_path": outcome.repository_path,
            "message": outcome.message,
        }
        if outcome.success:
            text = f"On branch {outcome.branch}"
        elif outcome.repository_path and outcome.status.value == "wrong_repository":
            text = f"{outcome.branch} lives in {outcome.repository_path}"
        else:
            text = ""
        _emit(args, payload, text)
        return 0 if outcome.success else 1

    if args.cmd == "suggest":
        suggestions = await engine.rank_suggestions(args.ticket)
        if args.accept and suggestions:
            ok = await engine.accept_suggestion(args.ticket, suggestions[0].branch)
            _emit(args, {"ok": ok, "branch": suggestions[0].branch},
                  f"Associated {args.ticket} -> {suggestions[0].branch}" if ok else "")
            return 0 if ok else 1
        rows = [{"branch": s.branch, "match": s.kind.name.lower()} for s in suggestions]
        _emit(args, rows, "\n".join(f"{r['branch']}\t{r['match']}" for r in rows))
        return 0

    if args.cmd == "detect":
        if args.current:
            ticket = await engine.auto_associate_current_branch()
            _emit(args, {"ticket": ticket}, f"Associated current branch with {ticket}" if ticket else "")
            return 0 if ticket else 1
        pairs = await engine.auto_detect_branch_associations()
        applied = []
        if args.apply:
            for ticket, branch in pairs:
                if await engine.associate_detected(ticket, branch):
                    applied.append((ticket, branch))
        rows = [{"ticket": t, "branch": b} for t, b in (applied if args.apply else pairs)]
        _emit(args, rows, "\n".join(f"{r['ticket']}\t{r['branch']}" for r in rows))
        return 0

    if args.cmd == "start":
        outcome = await engine.start_branch(
            args.ticket,
            args.title,
            branch_name=args.branch_name,
            base_branch=args.base_branch,
            labels=args.labels,
        )
        payload = {
            "status": outcome.status.value,
            "branch": outcome.branch,
            "action": outcome.action.value if outcome.action else None,
            "message": outcome.message,
        }
        _emit(args, payload, f"On branch {outcome.branch}" if outcome.success else "")
        return 0 if outcome.success else 1

    if args.cmd == "list":
        if args.repo:
            associations = await engine.get_global_associations_for_repository(args.repo)
        else:
            associations = await engine.get_all_associations()
        rows = [_association_row(a) for a in associations]
        _emit(
            args,
            rows,
            "\n".join(f"{a.ticket_id}\t{a.branch_name}\t{a.repository_path or a.repository_id}" for a in associations),
        )
        return 0

    if args.cmd == "cleanup":
        if args.apply:
            removed = await engine.cleanup_stale_associations()
            _emit(args, {"removed": removed}, f"Removed {removed} stale association(s)")
            return 0
        report = await engine.get_cleanup_suggestions()
        payload = {
            "stale": [_association_row(a) for a in report.stale],
            "old": [_association_row(a) for a in report.old],
            "duplicate_branches": [
                {"repositoryId": d.repository_id, "branchName": d.branch_name, "ticketIds": d.ticket_ids}
                for d in report.duplicate_branches
            ],
        }
        lines = [f"stale\t{a.ticket_id}\t{a.branch_name}" for a in report.stale]
        lines += [f"old\t{a.ticket_id}\t{a.branch_name}" for a in report.old]
        lines += [f"duplicate\t{d.branch_name}\t{','.join(d.ticket_ids)}" for d in report.duplicate_branches]
        _emit(args, payload, "\n".join(lines) or "Nothing to clean up")
        return 0

    if args.cmd == "repos":
        if args.refresh:
            current = await engine.refresh_current_repository()
            _emit(args, current.to_dict() if current else None, f"{current.id}\t{current.path}" if current else "")
            return 0 if current else 1
        if args.discover is not None:
            repos = await engine.discover_repositories(args.discover or None)
        else:
            repos = await (engine.stale_repositories() if args.stale else engine.list_repositories())
        _emit(
            args,
            [r.to_dict() for r in repos],
            "\n".join(
                f"{r.id}\t{r.path}\t{r.remote_url or '-'}\t{','.join(r.ticket_prefixes) or '-'}" for r in repos
            ),
        )
        return 0

    if args.cmd == "prefix":
        descriptor = await engine.set_ticket_prefixes(args.prefixes)
        _emit(
            args,
            descriptor.to_dict() if descriptor else None,
            f"{descriptor.path}: {', '.join(descriptor.ticket_prefixes) or 'no prefixes'}" if descriptor else "",
        )
        return 0 if descriptor else 1

    if args.cmd == "where":
        location = await engine.is_ticket_in_different_repo(args.ticket)
        repo = location.ticket_repository
        payload = {
            "repository": repo.to_dict() if repo else None,
            "in_different_repo": location.is_different,
        }
        _emit(args, payload, (repo.path + ("\t(other repository)" if location.is_different else "")) if repo else "")
        return 0 if repo else 1

    if args.cmd == "history":
        if args.ticket:
            one = await engine.get_history_for_ticket(args.ticket)
            histories = [one] if one else []
        else:
            histories = await engine.get_all_history()
        lines = [
            f"{h.ticket_id}\t{e.branch_name}\t{e.repository_path or e.repository_id}\t{'active' if e.is_active else '-'}"
            for h in histories
            for e in h.branches
        ]
        _emit(args, [h.to_dict() for h in histories], "\n".join(lines))
        return 0 if histories or not args.ticket else 1

    if args.cmd == "migrate":
        copied = await engine.migrate_local_to_global()
        _emit(args, {"copied": copied}, f"Copied {copied} association(s) to global scope")
        return 0

    return 2


def main(argv: list[str] | None = None) -> None:
    ap = _build_parser()
    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(0)

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
