"""Scheduled database operations job script.

Runs one pass of the database operations scheduler against the configured
store. Designed to run from cron (or any external scheduler):

- ``tick`` (every few minutes): hourly snapshot, due backups, daily
  auto-optimization
- ``maintenance`` (daily): log pruning, unused index report, integrity check,
  daily snapshot
- ``optimize`` (on demand): comprehensive optimization

Exit codes: 0 on success, 2 when the task ran but failed (or found a corrupt
store), 1 on a fatal setup error.
"""

import argparse
import logging
import sys
from typing import List, Optional

from dbops.lib.config import load_config
from dbops.lib.database import create_store_engine
from dbops.lib.distributed_tracing import correlation_scope
from dbops.services.database_manager import DatabaseManager

# Configure logging
logging.basicConfig(
  level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

TASKS = ('tick', 'maintenance', 'optimize')


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description='Run scheduled database operations')
  parser.add_argument('--task', choices=TASKS, default='tick', help='Task to run (default: tick)')
  parser.add_argument('--database-url', default=None, help='Override DBOPS_DATABASE_URL')
  return parser.parse_args(argv)


def run_task(manager: DatabaseManager, task: str) -> bool:
  """Run one task.

  Args:
      manager: Initialized DatabaseManager
      task: One of ``tick``, ``maintenance``, ``optimize``

  Returns:
      True if the task succeeded
  """
  if task == 'tick':
    manager.tick()
    return True

  if task == 'maintenance':
    summary = manager.perform_routine_maintenance()
    logger.info(
      f'Maintenance completed: {summary.logs_pruned} log rows pruned, '
      f'{len(summary.unused_indexes)} unused indexes, integrity_ok={summary.integrity_ok}'
    )
    if not summary.integrity_ok:
      logger.error(f'ALERT: Integrity check failed: {summary.integrity_messages[:5]}')
    return summary.integrity_ok

  summary = manager.perform_comprehensive_optimization()
  logger.info(
    f'Optimization completed: {len(summary.indexes_created)} indexes created, '
    f'statistics_updated={summary.statistics_updated}, '
    f'backup_completed={summary.backup_completed}, '
    f'{summary.optimizations_suggested} suggestions'
  )
  return True


def main(argv: Optional[List[str]] = None):
  """Main entry point for the scheduled job."""
  args = parse_args(argv)
  logger.info('=' * 80)
  logger.info(f'Starting database operations task: {args.task}')
  logger.info('=' * 80)

  try:
    config = load_config()
    if args.database_url:
      config = config.model_copy(update={'database_url': args.database_url})

    engine = create_store_engine(config.database_url)
    manager = DatabaseManager(engine, config)
    missing = manager.initialize()
    if missing:
      logger.error(f'System tables missing: {", ".join(missing)}; run "alembic upgrade head" first')
      sys.exit(1)

    try:
      with correlation_scope() as run_id:
        logger.info(f'Run correlation id: {run_id}')
        succeeded = run_task(manager, args.task)
    except Exception as e:
      logger.error(f'Task {args.task} failed: {e}', exc_info=True)
      sys.exit(2)
    finally:
      engine.dispose()

    if not succeeded:
      sys.exit(2)

    logger.info(f'Task {args.task} completed successfully')
    sys.exit(0)

  except SystemExit:
    raise
  except Exception as e:
    logger.error(f'Fatal error in database operations job: {e}', exc_info=True)
    sys.exit(1)


if __name__ == '__main__':
  main()
