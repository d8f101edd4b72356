# moss/modules/cli.py
"""
moss command line.

- rich for tables, panels and the confirmation prompt
- every command that changes the system shows what it will do first and
  asks for confirmation (``--yes`` skips the question)
- the process exit code is the ``exit_code`` of the MossError that stopped
  the command (0 on success)

Usage examples:
  moss install curl
  moss build ./mypkg
  moss remove -f oldlib
  moss upgrade --dry-run
"""

from __future__ import annotations
import argparse
import json
import os
import sys
from typing import Iterable, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from moss.modules import logger as _logger
from moss.modules.build import BuildManager, BuildReport
from moss.modules.catalog import Catalog
from moss.modules.config import load_settings
from moss.modules.db import InstalledDatabase
from moss.modules.errors import ConflictDetected, ManifestError, MossError
from moss.modules.recipe import RECIPE_FILE, RecipeManager
from moss.modules.remove import Remover
from moss.modules.resolver import BuildPlan, Resolver
from moss.modules.sync import RepoSync
from moss.modules.upgrade import UpgradeManager


def make_console(no_color: bool) -> Console:
    if no_color:
        return Console(color_system=None, no_color=True, highlight=False)
    return Console()


class CLI:
    def __init__(self, console: Console, settings, assume_yes: bool = False, as_json: bool = False):
        self.console = console
        self.settings = settings
        self.assume_yes = assume_yes
        self.as_json = as_json
        self.log = _logger.Logger("moss", settings)
        self.db = InstalledDatabase(settings.installed_db_dir, logger=self.log.child("db"))
        self.recipes = RecipeManager(logger=self.log.child("recipe"))
        self._catalog: Optional[Catalog] = None

    # -----------------------
    # helpers
    # -----------------------
    @property
    def catalog(self) -> Catalog:
        if self._catalog is None:
            self._catalog = Catalog(self.settings.search_paths, logger=self.log.child("catalog")).load()
        return self._catalog

    def resolve_targets(self, names: Iterable[str]) -> List[str]:
        """
        Package names, or paths to package directories (``.``, ``./foo``).
        With no names the current directory must be a package.
        """
        names = list(names) or ["."]
        out = []
        for name in names:
            if os.sep in name or name in (".", ".."):
                if not os.path.isfile(os.path.join(name, RECIPE_FILE)):
                    raise ManifestError(f"No {RECIPE_FILE} in {os.path.abspath(name)}")
                out.append(self.catalog.load_path(name).name)
            else:
                out.append(name)
        return out

    def resolver(self) -> Resolver:
        return Resolver(self.catalog, self.db, self.settings, logger=self.log.child("resolver"))

    def manager(self) -> BuildManager:
        return BuildManager(self.settings, self.db, logger=self.log.child("build"))

    def confirm(self, question: str) -> bool:
        if self.assume_yes:
            return True
        return Confirm.ask(question, console=self.console, default=True)

    def show_plan(self, plan: BuildPlan, title: str):
        table = Table(title=title)
        table.add_column("Package")
        table.add_column("Version")
        table.add_column("Installed")
        table.add_column("Reason")
        roots = set(plan.roots)
        for spec in plan:
            rec = self.db.get(spec.name)
            table.add_row(spec.name, spec.full_version, rec.full_version if rec else "-",
                          "requested" if spec.name in roots else "dependency")
        self.console.print(table)

    def show_report(self, report: BuildReport):
        if self.as_json:
            print(json.dumps(report.to_dict(), indent=2))
            return
        table = Table(title="Result")
        table.add_column("Package")
        table.add_column("State")
        table.add_column("Log")
        styles = {"committed": "green", "staging": "green", "failed": "red", "pending": "yellow"}
        for build in report.builds.values():
            state = build.state.value
            if build.failed_stage is not None:
                state = f"failed ({build.failed_stage.value})"
            style = styles.get(build.state.value, "")
            table.add_row(build.spec.name, f"[{style}]{state}[/{style}]" if style else state,
                          build.log_path or "")
        self.console.print(table)

    def run_plan(self, plan: BuildPlan, title: str, commit_roots: bool, reuse_staged: bool,
                 force_fetch: bool = False, dry_run: bool = False) -> int:
        if not len(plan):
            self.console.print("[green]Nothing to do[/green]")
            return 0
        self.show_plan(plan, title)
        manager = self.manager()
        manager.preflight(plan, reuse_staged=reuse_staged)
        if dry_run:
            return 0
        if not self.confirm(f"Proceed with {len(plan)} package(s)?"):
            self.console.print("[yellow]Aborted[/yellow]")
            return 1
        report = manager.run(plan, commit_roots=commit_roots, reuse_staged=reuse_staged,
                             force_fetch=force_fetch)
        self.show_report(report)
        report.raise_for_failure()
        return 0

    # -----------------------
    # build / install
    # -----------------------
    def cmd_build(self, args: argparse.Namespace) -> int:
        plan = self.resolver().resolve(self.resolve_targets(args.packages))
        if args.dot:
            with open(args.dot, "w", encoding="utf-8") as fh:
                fh.write(plan.graph.to_dot() + "\n")
            self.console.print(f"Graph written to {args.dot}")
        return self.run_plan(plan, "Build", commit_roots=False, reuse_staged=False,
                             force_fetch=args.force_fetch, dry_run=args.dry_run)

    def cmd_install(self, args: argparse.Namespace) -> int:
        plan = self.resolver().resolve(self.resolve_targets(args.packages))
        return self.run_plan(plan, "Install", commit_roots=True, reuse_staged=True,
                             force_fetch=args.force_fetch, dry_run=args.dry_run)

    def cmd_upgrade(self, args: argparse.Namespace) -> int:
        upgrader = UpgradeManager(self.catalog, self.db, resolver=self.resolver(),
                                  logger=self.log.child("upgrade"))
        candidates = upgrader.candidates()
        if candidates:
            table = Table(title="Changed packages")
            for col in ("Package", "Installed", "Available", ""):
                table.add_column(col)
            for c in candidates:
                table.add_row(c["name"], c["installed"], c["available"], c["kind"])
            self.console.print(table)
        return self.run_plan(upgrader.plan(), "Upgrade", commit_roots=True, reuse_staged=True,
                             dry_run=args.dry_run)

    # -----------------------
    # remove
    # -----------------------
    def cmd_remove(self, args: argparse.Namespace) -> int:
        remover = Remover(self.settings, self.db, dry_run=args.dry_run,
                          logger=self.log.child("remove"))
        for name in args.packages:
            rec = self.db.get(name)
            what = f"{name}@{rec.full_version}" if rec else name
            if not args.dry_run and not self.confirm(f"Remove {what}?"):
                self.console.print("[yellow]Aborted[/yellow]")
                return 1
            res = remover.remove_package(name, force=args.force)
            summary = f"{len(res['removed'])} removed"
            if res["missing"]:
                summary += f", {len(res['missing'])} already missing"
            if res["kept"]:
                summary += f", {len(res['kept'])} kept"
            self.console.print(f"[green]{escape(what)}[/green]: {summary}")
        return 0

    # -----------------------
    # catalog / database queries
    # -----------------------
    def cmd_list(self, args: argparse.Namespace) -> int:
        records, corrupt = self.db.scan()
        if args.packages:
            records = [r for r in records if r.name in args.packages]
            missing = [n for n in args.packages if n not in {r.name for r in records}]
            for n in missing:
                self.console.print(f"[yellow]{escape(n)} is not installed[/yellow]")
        if self.as_json:
            print(json.dumps([r.to_dict() for r in records], indent=2))
            return 0
        table = Table(title="Installed packages")
        for col in ("Package", "Version", "Files", "Explicit", "Installed at"):
            table.add_column(col)
        for r in records:
            table.add_row(r.name, r.full_version, str(len(r.files)), "yes" if r.explicit else "no",
                          r.installed_at)
        self.console.print(table)
        for name in corrupt:
            self.console.print(f"[red]Corrupt record: {escape(name)}[/red]")
        return 0

    def cmd_search(self, args: argparse.Namespace) -> int:
        matches = self.catalog.search(args.term)
        if not matches:
            self.console.print(f"[yellow]No packages match '{escape(args.term)}'[/yellow]")
            return 0
        table = Table(title=f"Search results for '{escape(args.term)}'")
        for col in ("Package", "Version", "Installed", "Summary"):
            table.add_column(col)
        for spec in matches:
            rec = self.db.get(spec.name)
            table.add_row(spec.name, spec.full_version, rec.full_version if rec else "", spec.summary)
        self.console.print(table)
        return 0

    def cmd_info(self, args: argparse.Namespace) -> int:
        spec = self.catalog.get(args.package)
        rec = self.db.get(args.package)
        if spec is None and rec is None:
            self.console.print(f"[red]Unknown package {escape(args.package)}[/red]")
            return 1
        lines = []
        if spec is not None:
            lines += [
                f"Version:       {spec.full_version}",
                f"Summary:       {spec.summary}",
                f"Maintainer:    {spec.maintainer}",
                f"Depends:       {', '.join(spec.depends) or '-'}",
                f"Build depends: {', '.join(spec.build_depends) or '-'}",
                f"Provides:      {', '.join(spec.provides) or '-'}",
                f"Conflicts:     {', '.join(spec.conflicts) or '-'}",
                f"Recipe:        {spec.directory}",
            ]
        if rec is not None:
            lines += [f"Installed:     {rec.full_version} at {rec.installed_at}",
                      f"Files:         {len(rec.files)}"]
            rdeps = self.db.reverse_dependencies(rec.name)
            if rdeps:
                lines.append(f"Required by:   {', '.join(rdeps)}")
        self.console.print(Panel(escape("\n".join(lines)), title=args.package))
        return 0

    # -----------------------
    # recipes / sources
    # -----------------------
    def cmd_new(self, args: argparse.Namespace) -> int:
        path = self.recipes.create(args.directory, args.name)
        self.console.print(f"[green]Created {escape(path)}[/green]")
        return 0

    def cmd_checksum(self, args: argparse.Namespace) -> int:
        manager = self.manager()
        for name in self.resolve_targets(args.packages):
            spec = self.catalog.get(name)
            if spec is None:
                raise ManifestError(f"Unknown package {name}", package=name)
            digests = manager.checksums(spec)
            self.recipes.write_checksums(spec.directory, digests)
            for url, digest in digests.items():
                self.console.print(f"{digest}  {escape(url)}")
            self.console.print(f"[green]Updated {escape(spec.directory)}[/green]")
        return 0

    def cmd_download(self, args: argparse.Namespace) -> int:
        names = self.resolve_targets(args.packages)
        specs = []
        for name in names:
            if name not in self.catalog:
                raise ManifestError(f"Unknown package {name}", package=name)
            specs.append(self.catalog[name])
        for name, paths in self.manager().download(specs, force=args.force).items():
            for p in paths:
                self.console.print(f"{escape(name)}: {escape(p)}")
        return 0

    def cmd_purge(self, args: argparse.Namespace) -> int:
        manager = self.manager()
        sources = manager.pipeline.fetcher.purge()
        staged = manager.pipeline.purge_staged()
        manager.pipeline.allocator.purge()
        self.console.print(f"Removed {sources} cached source file(s) and {staged} staged tree(s)")
        return 0

    def cmd_sync(self, args: argparse.Namespace) -> int:
        with self.console.status("Synchronizing repositories..."):
            results = RepoSync(self.settings, logger=self.log.child("sync")).sync()
        table = Table(title="sync")
        table.add_column("Repository")
        table.add_column("Status")
        for path, status in results.items():
            table.add_row(path, status)
        self.console.print(table)
        return 0


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="moss", description="Source-based package manager")
    ap.add_argument("-c", "--config", help="Path to moss.conf")
    ap.add_argument("-y", "--yes", action="store_true", help="Don't ask for confirmation")
    ap.add_argument("-v", "--verbose", action="store_true", help="Show build output")
    ap.add_argument("--debug", action="store_true", help="Debug logging")
    ap.add_argument("--no-color", action="store_true", help="Disable color output")
    ap.add_argument("--json", action="store_true", help="Machine-readable results and errors")
    ap.add_argument("-j", "--workers", type=int, help="Parallel builds")
    sub = ap.add_subparsers(dest="command")

    p = sub.add_parser("build", aliases=["b"], help="Build packages (dependencies are installed)")
    p.add_argument("packages", nargs="*")
    p.add_argument("--dry-run", action="store_true", help="Only show the plan")
    p.add_argument("--force-fetch", action="store_true", help="Download sources again")
    p.add_argument("--dot", metavar="FILE", help="Write the dependency graph (graphviz)")
    p.set_defaults(handler=CLI.cmd_build)

    p = sub.add_parser("install", aliases=["i"], help="Build and install packages")
    p.add_argument("packages", nargs="*")
    p.add_argument("--dry-run", action="store_true", help="Only show the plan")
    p.add_argument("--force-fetch", action="store_true", help="Download sources again")
    p.set_defaults(handler=CLI.cmd_install)

    p = sub.add_parser("remove", aliases=["r"], help="Remove installed packages")
    p.add_argument("packages", nargs="+")
    p.add_argument("-f", "--force", action="store_true", help="Ignore reverse dependencies")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(handler=CLI.cmd_remove)

    p = sub.add_parser("upgrade", aliases=["u"], help="Rebuild installed packages that changed")
    p.add_argument("--dry-run", action="store_true", help="Only show the plan")
    p.set_defaults(handler=CLI.cmd_upgrade)

    p = sub.add_parser("list", aliases=["l"], help="List installed packages")
    p.add_argument("packages", nargs="*")
    p.set_defaults(handler=CLI.cmd_list)

    p = sub.add_parser("search", aliases=["s"], help="Search the catalog")
    p.add_argument("term")
    p.set_defaults(handler=CLI.cmd_search)

    p = sub.add_parser("info", help="Show package details")
    p.add_argument("package")
    p.set_defaults(handler=CLI.cmd_info)

    p = sub.add_parser("new", aliases=["n"], help="Create a package template")
    p.add_argument("name")
    p.add_argument("directory", nargs="?", default=".")
    p.set_defaults(handler=CLI.cmd_new)

    p = sub.add_parser("checksum", aliases=["c"], help="Write source checksums into recipes")
    p.add_argument("packages", nargs="*")
    p.set_defaults(handler=CLI.cmd_checksum)

    p = sub.add_parser("download", aliases=["d"], help="Fetch sources only")
    p.add_argument("packages", nargs="*")
    p.add_argument("-f", "--force", action="store_true", help="Ignore cached files")
    p.set_defaults(handler=CLI.cmd_download)

    p = sub.add_parser("purge", aliases=["p"], help="Delete cached sources and staged trees")
    p.set_defaults(handler=CLI.cmd_purge)

    p = sub.add_parser("sync", aliases=["sy"], help="Update package repositories (git)")
    p.set_defaults(handler=CLI.cmd_sync)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_argparser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])
    console = make_console(args.no_color)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2

    try:
        settings = load_settings(
            args.config,
            workers=args.workers,
            verbose_builds=True if args.verbose else None,
            log_level="debug" if args.debug else None,
            color_output=False if args.no_color else None,
        )
        cli = CLI(console, settings, assume_yes=args.yes, as_json=args.json)
        return args.handler(cli, args)
    except MossError as e:
        if args.json:
            print(json.dumps(e.to_dict(), indent=2, default=str))
        elif isinstance(e, ConflictDetected):
            console.print("[red]error:[/red] conflicts found")
            for report in e.reports:
                console.print(f"  {escape(str(report))}")
        else:
            console.print(f"[red]error:[/red] {escape(e.message)}")
        return e.exit_code
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
