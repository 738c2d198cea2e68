"""
Rewrite author/committer identities across a repository's history.

Builds a mailmap that folds one or more old email addresses into a single
new identity, previews the commits it would touch, and hands the mailmap to
git-filter-repo to do the actual rewrite.

    git-reauthor -o old@example.com -e new@example.com -n "New Name"
"""

from __future__ import annotations
import argparse
import contextlib
import dataclasses
import os
import shutil
import signal
import subprocess
import sys
import tempfile
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from pygments import highlight
from pygments.formatters import TerminalFormatter
from pygments.lexer import RegexLexer
from pygments.token import Comment, Name, String, Whitespace

# ---- constants & utilities ---------------------------------------------------

FILTER_REPO = "git-filter-repo"
CONFIRM_PROMPT = "Proceed with rewriting history? (y/N) "
PREVIEW_FORMAT = "  %h %s <%ae>"

INSTALL_HINT = f"""\
Error: {FILTER_REPO} is not installed.

Install it via:
  - macOS:   brew install git-filter-repo
  - pip:     pip install git-filter-repo
  - Linux:   Available in most package managers

See: https://github.com/newren/git-filter-repo"""

EXAMPLES = """\
Examples:
  # Change all commits by old@example.com
  %(prog)s -o "old@example.com" -e "new@example.com" -n "New Name"

  # Map multiple email aliases to one identity
  %(prog)s -o "old@example.com" -o "12345+user@users.noreply.github.com" \\
    -o "user@work.com" -e "new@example.com" -n "New Name"

  # Change only last 5 commits
  %(prog)s -o "old@example.com" -e "new@example.com" -r "HEAD~5..HEAD"

  # Dry run to preview changes
  %(prog)s -o "old@example.com" -e "new@example.com" --dry-run

WARNING: This rewrites git history. Only use on commits that haven't been pushed,
         or coordinate with all collaborators if rewriting shared history."""


def run(cmd: List[str], cwd: str | None = None, check: bool = True) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, cwd=cwd, check=check, text=True, capture_output=True)


class ReauthorError(Exception):
    """Base class for errors that end the run with a message."""


class PreconditionError(ReauthorError):
    pass


class EngineError(ReauthorError):
    def __init__(self, returncode: int):
        super().__init__(f"{FILTER_REPO} failed with exit status {returncode}")
        self.returncode = returncode


# ---- identity & mailmap ------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class IdentitySpec:
    old_emails: Tuple[str, ...]
    new_name: Optional[str] = None
    new_email: Optional[str] = None
    range: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.old_emails:
            raise ValueError("At least one -o/--old-email is required")
        if any(not e.strip() for e in self.old_emails):
            raise ValueError("-o/--old-email must not be empty")
        if not self.new_name and not self.new_email:
            raise ValueError("At least one of -e/--new-email or -n/--new-name is required")
        for flag, value in (("-n/--new-name", self.new_name), ("-e/--new-email", self.new_email)):
            if value is not None and not value.strip():
                raise ValueError(f"{flag} must not be blank")
        # each value ends up inside a single mailmap line
        for value in (*self.old_emails, self.new_name or "", self.new_email or ""):
            if any(ch in value for ch in "<>\r\n"):
                raise ValueError(f"Invalid character in {value!r}: names and emails may not contain <, > or newlines")


def build_mailmap(spec: IdentitySpec) -> List[str]:
    """
    Return one mailmap line per old email, in the order they were given.

    Without a new email only the name changes, so the old address maps to
    itself: ``Name <old> <old>``.
    """
    entries: List[str] = []
    for old in spec.old_emails:
        if spec.new_email:
            canonical = f"<{spec.new_email}>"
            if spec.new_name:
                canonical = f"{spec.new_name} {canonical}"
            entries.append(f"{canonical} <{old}>")
        else:
            entries.append(f"{spec.new_name} <{old}> <{old}>")
    return entries


class MailmapLexer(RegexLexer):
    name = "Mailmap"
    aliases = ["mailmap"]
    filenames = [".mailmap"]

    tokens = {
        "root": [
            (r"#.*$", Comment.Single),
            (r"<[^>\n]*>", Name.Tag),
            (r"\s+", Whitespace),
            (r"[^<#\s][^<#\n]*?(?=\s*<)", String),
            (r"[^<#\n]+", String),
        ],
    }


def render_mailmap(entries: Sequence[str], color: bool = False, indent: str = "  ") -> str:
    text = "".join(f"{indent}{e}\n" for e in entries)
    if color:
        return highlight(text, MailmapLexer(), TerminalFormatter())
    return text


# ---- git helpers -------------------------------------------------------------

def in_git_repo(cwd: str | None = None) -> bool:
    try:
        run(["git", "rev-parse", "--git-dir"], cwd=cwd)
    except subprocess.CalledProcessError:
        return False
    return True


def check_preconditions(cwd: str | None = None) -> None:
    if shutil.which("git") is None:
        raise PreconditionError("Error: git is not installed")
    if not in_git_repo(cwd):
        raise PreconditionError("Error: Not in a git repository")
    if shutil.which(FILTER_REPO) is None:
        raise PreconditionError(INSTALL_HINT)


def find_commits(email: str, rev_range: Optional[str] = None, cwd: str | None = None) -> List[str]:
    """
    Return preview lines for commits authored by ``email``.

    A failing ``git log`` (empty repository, bad range) yields no lines.
    """
    args = ["git", "log", f"--format={PREVIEW_FORMAT}", f"--author={email}"]
    if rev_range:
        args.append(rev_range)
    try:
        out = run(args, cwd=cwd).stdout
    except subprocess.CalledProcessError:
        return []
    return [line for line in out.splitlines() if line.strip()]


def print_preview(spec: IdentitySpec, cwd: str | None = None) -> None:
    print("Rewriting commits matching:")
    for old in spec.old_emails:
        print(f"  - {old}")
    print()
    print("Replacing with:")
    if spec.new_name:
        print(f"  Name:  {spec.new_name}")
    if spec.new_email:
        print(f"  Email: {spec.new_email}")
    print()
    print(f"Range: {spec.range if spec.range else 'ALL commits'}")
    print()
    print("Commits that will be affected:")
    for old in spec.old_emails:
        for line in find_commits(old, spec.range, cwd=cwd):
            print(line)
    print()


# ---- confirmation & rewrite engine -------------------------------------------

Confirmation = Callable[[str], bool]


def ask_confirmation(prompt: str) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip() in ("y", "Y")


class RewriteEngine:
    """Anything that can apply a mailmap file to the current repository."""

    def apply(self, mailmap_path: str, rev_range: Optional[str] = None) -> int:
        raise NotImplementedError


class FilterRepoEngine(RewriteEngine):
    def __init__(self, cwd: str | None = None):
        self.cwd = cwd

    def command(self, mailmap_path: str, rev_range: Optional[str] = None) -> List[str]:
        cmd = [FILTER_REPO, "--mailmap", mailmap_path, "--force"]
        if rev_range:
            # filter-repo restricts to a range through --refs
            cmd += ["--refs", rev_range]
        return cmd

    def apply(self, mailmap_path: str, rev_range: Optional[str] = None) -> int:
        # foreground, inherits stdio so filter-repo's own progress is visible
        return subprocess.run(self.command(mailmap_path, rev_range), cwd=self.cwd).returncode


@contextlib.contextmanager
def mailmap_file(entries: Sequence[str]) -> Iterator[str]:
    fd, path = tempfile.mkstemp(prefix="git_reauthor_", suffix=".mailmap")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write("".join(f"{e}\n" for e in entries))
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)


def rewrite(entries: Sequence[str], rev_range: Optional[str], engine: RewriteEngine) -> None:
    with mailmap_file(entries) as path:
        rc = engine.apply(path, rev_range)
    if rc != 0:
        raise EngineError(rc)


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


# ---- main --------------------------------------------------------------------

class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"Error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    ap = _ArgumentParser(
        prog="git-reauthor",
        description="Change commit author/committer in git history using git-filter-repo.",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    ap.add_argument("-o", "--old-email", action="append", default=[], metavar="EMAIL", help="Email address to replace (can be specified multiple times)")
    ap.add_argument("-e", "--new-email", metavar="EMAIL", help="New email address")
    ap.add_argument("-n", "--new-name", metavar="NAME", help="New author name")
    ap.add_argument("-r", "--range", metavar="RANGE", help="Git revision range (e.g., HEAD~5..HEAD); if omitted, rewrites entire history")
    ap.add_argument("-d", "--dry-run", action="store_true", help="Show what would be changed without modifying anything")
    ap.add_argument("--no-color", action="store_true", help="Don't highlight the mailmap preview")
    return ap


def parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[IdentitySpec, argparse.Namespace]:
    """Return ``(IdentitySpec, namespace)``; usage problems exit with status 1."""
    ap = build_parser()
    args = ap.parse_args(argv)
    try:
        spec = IdentitySpec(
            old_emails=tuple(args.old_email),
            new_name=args.new_name or None,
            new_email=args.new_email or None,
            range=args.range or None,
        )
    except ValueError as e:
        ap.error(str(e))
    return spec, args


def main(
    argv: Optional[Sequence[str]] = None,
    engine: Optional[RewriteEngine] = None,
    confirm: Confirmation = ask_confirmation,
) -> int:
    spec, args = parse_args(argv)
    engine = engine if engine is not None else FilterRepoEngine()
    color = not args.no_color and sys.stdout.isatty()

    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        check_preconditions()
        entries = build_mailmap(spec)
        print_preview(spec)

        if args.dry_run:
            print("[DRY RUN] No changes made.")
            print("Mailmap entries that would be used:")
            print(render_mailmap(entries, color=color), end="")
            return 0

        if not confirm(CONFIRM_PROMPT):
            print("Aborted.")
            return 0

        print()
        print(f"🔨 Running {FILTER_REPO}...", file=sys.stderr)
        rewrite(entries, spec.range, engine)

        print()
        print("✓ Done! History has been rewritten.")
        print()
        print("If you need to push these changes to a remote:")
        print("  git push --force-with-lease origin <branch>")
        return 0
    except PreconditionError as e:
        print(str(e), file=sys.stderr)
        return 1
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.returncode
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)


if __name__ == "__main__":
    raise SystemExit(main())
