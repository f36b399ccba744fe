#!/usr/bin/env python3
"""
regwatch management CLI - commands for managing crawlers, schedules, run
history and AI judgments.

Usage: python regwatch_cli.py <command> [args]

Commands:
    crawlers                    - List registered crawlers
    enable <crawler>            - Enable a crawler
    disable <crawler>           - Disable a crawler
    presets [crawler]           - List presets
    tasks                       - List scheduled tasks
    schedule <preset_id> <cron> - Schedule a preset
    delete-task <task_id>       - Delete a task (history is kept)
    copy-preset <id> <name>     - Copy a preset (the copy starts disabled)
    delete-preset <id>          - Delete a preset
    trigger <task_id>           - Run a task now
    retry <record_id>           - Re-run a failed execution
    pause <task_id>             - Pause a task
    resume <task_id>            - Resume a task
    reschedule <task_id> <cron> - Change a task's cron expression
    running                     - Show running executions
    history [crawler] [status]  - Show recent executions
    stats <task_id>             - Show task statistics
    crawler-stats <crawler>     - Show crawler statistics
    overview                    - Show system overview
    preview [entity_type ...]   - Judge up to 50 records without writing anything
    judge [entity_type ...]     - Classify records in the background and stage the results
    judges                      - List recent judge tasks
    progress <judge_task_id>    - Show judge task progress
    cancel <judge_task_id>      - Cancel a judge task
    pending [entity_type]       - List pending judgments
    apply <id> [id ...]         - Apply pending judgments
    discard <id> [id ...]       - Discard pending judgments
    blacklist [add|remove <kw> ...] - List, add or remove blacklist keywords
    cleanup                     - Delete expired pending judgments

Changes to tasks are persisted; a running daemon picks them up on its next sync.
"""

import asyncio
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from regwatch.config import load_config
from regwatch.errors import RegwatchError
from regwatch.models import ExecutionRecord, ExecutionStatus, FilterCriteria, JudgeTaskStatus
from regwatch.orchestrator import Orchestrator


class Colors:
    """ANSI color codes for terminal output."""
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    WHITE = "\033[97m"
    BOLD = "\033[1m"
    END = "\033[0m"


STATUS_COLORS = {
    "RUNNING": Colors.BLUE,
    "SUCCESS": Colors.GREEN,
    "NO_NEW_DATA": Colors.CYAN,
    "FAILED": Colors.RED,
    "CANCELLED": Colors.YELLOW,
    "COMPLETED": Colors.GREEN,
    "PENDING": Colors.WHITE,
    "ACTIVE": Colors.GREEN,
    "PAUSED": Colors.YELLOW,
}


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format datetime for display."""
    if not dt:
        return "N/A"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_duration(ms: Optional[float]) -> str:
    """Format a duration in milliseconds to human readable."""
    if ms is None:
        return "-"
    seconds = ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds/60:.1f}m"
    return f"{seconds/3600:.1f}h"


def colored(status: str) -> str:
    return f"{STATUS_COLORS.get(status, Colors.WHITE)}{status}{Colors.END}"


def print_record(record: ExecutionRecord) -> None:
    print(
        f"  #{record.id:<5} task {record.task_id:<4} {record.crawler_name:<22} "
        f"{colored(record.status.value):<22} saved={record.saved_count:<5} skipped={record.skipped_count:<5} "
        f"{format_duration(record.duration_ms):>7}  {format_timestamp(record.start_time)}"
    )
    if record.error_message and record.status == ExecutionStatus.FAILED:
        print(f"         {Colors.RED}{record.error_message}{Colors.END}")


# ---------------------------------------------- #
# Commands

async def show_crawlers(app: Orchestrator, args: List[str]) -> None:
    print(f"{Colors.BOLD}🕷️  Crawlers{Colors.END}")
    print("=" * 60)
    for d in app.crawlers.list():
        state = f"{Colors.GREEN}enabled{Colors.END}" if d.enabled else f"{Colors.RED}disabled{Colors.END}"
        print(f"  {d.name:<24} {state:<18} {d.country_code or '-':<4} {d.description}")
        print(f"    params: {', '.join(d.param_schema.field_names) or '-'}")
    stats = app.crawlers.statistics()
    print(f"\nTotal: {stats['total']}  Enabled: {stats['enabled']}  Disabled: {stats['disabled']}")


async def set_crawler_enabled(app: Orchestrator, args: List[str], enabled: bool) -> None:
    definition = await app.crawler_state.set_enabled(args[0], enabled)
    print(f"{Colors.GREEN}✅ {definition.name} {'enabled' if definition.enabled else 'disabled'}{Colors.END}")


async def show_presets(app: Orchestrator, args: List[str]) -> None:
    presets = await app.presets.list(args[0] if args else None)
    print(f"{Colors.BOLD}🧩 Presets{Colors.END}")
    print("=" * 60)
    if not presets:
        print(f"{Colors.YELLOW}No presets{Colors.END}")
    for p in presets:
        state = "" if p.enabled else f" {Colors.YELLOW}(disabled){Colors.END}"
        print(f"  #{p.id:<4} {p.crawler_name:<22} {p.name}{state}")
        print(f"        {p.parameters}")


async def show_tasks(app: Orchestrator, args: List[str]) -> None:
    tasks = await app.scheduler.list()
    print(f"{Colors.BOLD}📋 Scheduled Tasks{Colors.END}")
    print("=" * 60)
    if not tasks:
        print(f"{Colors.YELLOW}No tasks scheduled{Colors.END}")
    for t in tasks:
        source = f"preset #{t.preset_id}" if t.preset_id is not None else "inline params"
        print(f"  #{t.id:<4} {colored(t.state.value):<18} {t.cron_expression:<16} {t.crawler_name:<22} {t.name} ({source})")


async def trigger_task(app: Orchestrator, args: List[str]) -> None:
    print(f"{Colors.BLUE}🚀 Running task #{args[0]}...{Colors.END}")
    record = await app.scheduler.trigger(int(args[0]), triggered_by="CLI")
    print_record(record)


async def change_task(app: Orchestrator, args: List[str], action: str) -> None:
    task_id = int(args[0])
    if action == "pause":
        task = await app.scheduler.pause(task_id)
    elif action == "resume":
        task = await app.scheduler.resume(task_id)
    else:
        task = await app.scheduler.reschedule(task_id, " ".join(args[1:]))
    print(f"{Colors.GREEN}✅ Task #{task.id}: {task.state.value} ({task.cron_expression}){Colors.END}")


async def schedule_preset(app: Orchestrator, args: List[str]) -> None:
    task = await app.scheduler.add(" ".join(args[1:]), preset_id=int(args[0]))
    print(f"{Colors.GREEN}✅ Task #{task.id} scheduled: {task.name} ({task.cron_expression}){Colors.END}")


async def delete_task(app: Orchestrator, args: List[str]) -> None:
    await app.scheduler.delete(int(args[0]))
    print(f"{Colors.GREEN}✅ Task #{args[0]} deleted{Colors.END}")


async def copy_preset(app: Orchestrator, args: List[str]) -> None:
    preset = await app.presets.copy(int(args[0]), " ".join(args[1:]))
    print(f"{Colors.GREEN}✅ Preset #{preset.id} '{preset.name}' created (disabled){Colors.END}")


async def delete_preset(app: Orchestrator, args: List[str]) -> None:
    await app.presets.delete(int(args[0]))
    print(f"{Colors.GREEN}✅ Preset #{args[0]} deleted{Colors.END}")


async def retry_run(app: Orchestrator, args: List[str]) -> None:
    print(f"{Colors.BLUE}🔁 Retrying run #{args[0]}...{Colors.END}")
    record = await app.executor.retry(int(args[0]), triggered_by="CLI")
    print_record(record)


async def show_running(app: Orchestrator, args: List[str]) -> None:
    records = await app.monitor.running_tasks()
    print(f"{Colors.BOLD}⏳ Running Executions{Colors.END}")
    print("=" * 60)
    if not records:
        print(f"{Colors.GREEN}Nothing running{Colors.END}")
    for record in records:
        print_record(record)


async def show_history(app: Orchestrator, args: List[str]) -> None:
    crawler = args[0] if args and args[0] != "-" else None
    status = ExecutionStatus(args[1].upper()) if len(args) > 1 else None
    page = await app.monitor.history(crawler_name=crawler, status=status, page_size=25)
    print(f"{Colors.BOLD}📜 Execution History{Colors.END} ({page.total} total)")
    print("=" * 60)
    for record in page.items:
        print_record(record)


async def show_stats(app: Orchestrator, args: List[str]) -> None:
    stats = await app.monitor.task_statistics(int(args[0]))
    print(f"{Colors.BOLD}📈 Task #{stats.task_id} Statistics{Colors.END}")
    print("=" * 60)
    print(f"  Total runs:    {stats.total_runs}")
    print(f"  Success:       {Colors.GREEN}{stats.success_count}{Colors.END}")
    print(f"  No new data:   {Colors.CYAN}{stats.no_new_data_count}{Colors.END}")
    print(f"  Failed:        {Colors.RED}{stats.failure_count}{Colors.END}")
    print(f"  Success rate:  {stats.success_rate * 100:.1f}%")
    print(f"  Avg duration:  {format_duration(stats.avg_duration_ms)}")
    print(f"  Total saved:   {stats.total_saved}")
    if stats.last_run:
        print("  Last run:")
        print_record(stats.last_run)


async def show_crawler_stats(app: Orchestrator, args: List[str]) -> None:
    app.crawlers.get(args[0])
    stats = await app.monitor.crawler_statistics(args[0])
    print(f"{Colors.BOLD}📈 {stats.crawler_name} Statistics{Colors.END}")
    print("=" * 60)
    print(f"  Total runs:    {stats.total_runs}")
    print(f"  Success:       {Colors.GREEN}{stats.success_count}{Colors.END}")
    print(f"  Failed:        {Colors.RED}{stats.failure_count}{Colors.END}")
    print(f"  Success rate:  {stats.success_rate * 100:.1f}%")
    print(f"  Total saved:   {stats.total_saved}")
    print(f"  Last run:      {format_timestamp(stats.last_run_time)}")


async def show_overview(app: Orchestrator, args: List[str]) -> None:
    o = await app.monitor.system_overview()
    print(f"{Colors.BOLD}📊 System Overview{Colors.END}")
    print("=" * 60)
    print(f"  Tasks: {o.total_tasks} ({Colors.GREEN}{o.active_tasks} active{Colors.END}, "
          f"{Colors.YELLOW}{o.paused_tasks} paused{Colors.END})")
    print(f"  Runs: {o.total_runs} total, {o.running_count} running")
    print(f"  Last 24h: {o.runs_last_24h} runs, failure rate {o.failure_rate_last_24h * 100:.1f}%")
    for status, count in sorted(o.runs_by_status.items()):
        print(f"    {colored(status):<22} {count}")
    pending = await app.pending.count()
    print(f"  Pending judgments: {pending}")


async def preview(app: Orchestrator, args: List[str]) -> None:
    criteria = FilterCriteria(module_type=app.cfg.judging.module_type, entity_types=args)
    result = await app.pipeline.preview_with_blacklist_check(criteria)
    print(f"{Colors.BOLD}🔎 Preview ({result.total} records){Colors.END}")
    print("=" * 60)
    for item in result.audit_items:
        level = Colors.RED if item.suggested_risk_level.value == "HIGH" else Colors.GREEN
        print(f"  {item.entity_type:<14} {item.entity_id:<12} {level}{item.suggested_risk_level.value:<5}{Colors.END} {item.remark}")
    print(f"\nBlacklisted: {result.blacklist_filtered}  Kept: {result.ai_kept}  "
          f"Downgraded: {result.ai_downgraded}  Failed: {result.failed_count}")
    if result.suggested_blacklist:
        print(f"Suggested keywords: {', '.join(result.suggested_blacklist)}")


async def list_judges(app: Orchestrator, args: List[str]) -> None:
    tasks = await app.judge.list_tasks()
    print(f"{Colors.BOLD}🤖 Judge Tasks{Colors.END}")
    print("=" * 60)
    if not tasks:
        print(f"{Colors.YELLOW}No judge tasks{Colors.END}")
    for t in tasks:
        print(f"  {t.task_id}  {colored(t.status.value):<20} {t.progress}/{t.total_count}  {format_timestamp(t.created_at)}")


async def run_judge(app: Orchestrator, args: List[str]) -> None:
    criteria = FilterCriteria(module_type=app.cfg.judging.module_type, entity_types=args, judge_all=True)
    task_id = await app.judge.submit(criteria)
    print(f"{Colors.BLUE}🤖 Judge task {task_id} started{Colors.END}")
    while True:
        await asyncio.sleep(2)
        task = await app.judge.get_progress(task_id)
        print(f"  {colored(task.status.value)} {task.progress}/{task.total_count} ({task.progress_percent}%)")
        if task.status not in (JudgeTaskStatus.PENDING, JudgeTaskStatus.RUNNING):
            break
    await show_judge_task(app, [task_id])


async def show_judge_task(app: Orchestrator, args: List[str]) -> None:
    task = await app.judge.get_progress(args[0])
    print(f"{Colors.BOLD}🤖 Judge Task {task.task_id}{Colors.END}")
    print("=" * 60)
    print(f"  Status:      {colored(task.status.value)}")
    print(f"  Progress:    {task.progress}/{task.total_count} ({task.progress_percent}%)")
    print(f"  Related:     {task.related_count}")
    print(f"  Unrelated:   {task.unrelated_count}")
    print(f"  Blacklisted: {task.blacklist_filtered_count}")
    print(f"  Failed:      {task.failed_count}")
    print(f"  Staged:      {task.staged_count}")
    if task.error_message:
        print(f"  {Colors.RED}{task.error_message}{Colors.END}")


async def cancel_judge_task(app: Orchestrator, args: List[str]) -> None:
    task = await app.judge.cancel(args[0])
    print(f"{Colors.YELLOW}🛑 Judge task {task.task_id} cancelled at {task.progress}/{task.total_count}{Colors.END}")


async def show_pending(app: Orchestrator, args: List[str]) -> None:
    judgments = await app.pending.list(app.cfg.judging.module_type, args[0] if args else None, limit=100)
    print(f"{Colors.BOLD}⚖️  Pending Judgments{Colors.END}")
    print("=" * 60)
    if not judgments:
        print(f"{Colors.GREEN}Nothing pending{Colors.END}")
    for j in judgments:
        level = Colors.RED if j.suggested_risk_level.value == "HIGH" else Colors.GREEN
        print(f"  #{j.id:<5} {j.entity_type:<14} {j.entity_id:<12} {level}{j.suggested_risk_level.value:<5}{Colors.END} {j.suggested_remark}")
    stats = await app.pending.statistics(app.cfg.judging.module_type)
    print(f"\nBlacklisted: {stats['filtered_by_blacklist']}  High risk: {stats['high_risk']}  "
          f"Suggested keywords: {stats['new_blacklist_keywords']}")


async def apply_pending(app: Orchestrator, args: List[str]) -> None:
    result = await app.pending.apply([int(a) for a in args], confirmed_by="cli")
    print(f"{Colors.GREEN}✅ Applied {result.applied}/{result.total}{Colors.END}")
    for error in result.errors:
        print(f"  {Colors.RED}{error}{Colors.END}")


async def discard_pending(app: Orchestrator, args: List[str]) -> None:
    count = await app.pending.discard([int(a) for a in args])
    print(f"{Colors.GREEN}✅ Discarded {count}{Colors.END}")


async def blacklist(app: Orchestrator, args: List[str]) -> None:
    if args and args[0] == "add":
        added = await app.blacklist.add_keywords(args[1:], source="cli")
        print(f"{Colors.GREEN}✅ Added {added} keyword(s){Colors.END}")
        return
    if args and args[0] == "remove":
        removed = await app.blacklist.remove_keywords(args[1:])
        print(f"{Colors.GREEN}✅ Removed {removed} keyword(s){Colors.END}")
        return
    keywords = await app.blacklist.snapshot()
    print(f"{Colors.BOLD}🚫 Blacklist ({len(keywords)}){Colors.END}")
    for keyword in keywords.keywords:
        print(f"  {keyword}")


async def cleanup(app: Orchestrator, args: List[str]) -> None:
    count = await app.cleanup_pending()
    print(f"{Colors.GREEN}✅ Removed {count} expired judgment(s){Colors.END}")


COMMANDS = {
    "crawlers": (show_crawlers, 0),
    "enable": (lambda app, args: set_crawler_enabled(app, args, True), 1),
    "disable": (lambda app, args: set_crawler_enabled(app, args, False), 1),
    "presets": (show_presets, 0),
    "tasks": (show_tasks, 0),
    "schedule": (schedule_preset, 2),
    "delete-task": (delete_task, 1),
    "copy-preset": (copy_preset, 2),
    "delete-preset": (delete_preset, 1),
    "trigger": (trigger_task, 1),
    "retry": (retry_run, 1),
    "pause": (lambda app, args: change_task(app, args, "pause"), 1),
    "resume": (lambda app, args: change_task(app, args, "resume"), 1),
    "reschedule": (lambda app, args: change_task(app, args, "reschedule"), 2),
    "running": (show_running, 0),
    "history": (show_history, 0),
    "stats": (show_stats, 1),
    "crawler-stats": (show_crawler_stats, 1),
    "overview": (show_overview, 0),
    "preview": (preview, 0),
    "judge": (run_judge, 0),
    "judges": (list_judges, 0),
    "progress": (show_judge_task, 1),
    "cancel": (cancel_judge_task, 1),
    "pending": (show_pending, 0),
    "apply": (apply_pending, 1),
    "discard": (discard_pending, 1),
    "blacklist": (blacklist, 0),
    "cleanup": (cleanup, 0),
}


async def main(argv: List[str]) -> int:
    """Main CLI entry point."""
    if not argv:
        print(__doc__)
        return 1

    command, args = argv[0].lower(), argv[1:]
    if command not in COMMANDS:
        print(f"{Colors.RED}Unknown command: {command}{Colors.END}")
        print(__doc__)
        return 1

    handler, min_args = COMMANDS[command]
    if len(args) < min_args:
        print(f"{Colors.RED}'{command}' needs at least {min_args} argument(s){Colors.END}")
        return 1

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    )

    app = Orchestrator(load_config())
    try:
        await app.open()
        await handler(app, args)
        return 0
    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Interrupted{Colors.END}")
        return 130
    except (RegwatchError, ValueError) as e:
        print(f"{Colors.RED}Error: {e}{Colors.END}")
        return 1
    finally:
        await app.stop()


def run_cli():
    sys.exit(asyncio.run(main(sys.argv[1:])))


if __name__ == "__main__":
    run_cli()
