"""Database operations API endpoints.

Operator-facing routes over the DatabaseManager owned by the application
(``app.state.database_manager``). Handlers are ``async`` and call the manager
directly, so requests are served one at a time against the single store
connection.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from dbops.lib.errors import (
  BackupError,
  BackupIntegrityError,
  BackupNotFoundError,
  NothingToBackupError,
  RecoveryFailedError,
)
from dbops.models.backup import BackupMetadata, RestoreOptions, RestoreResult
from dbops.models.query_metrics import IndexUsage, SlowQueryReport
from dbops.models.system_health import (
  MaintenanceSummary,
  OptimizationSummary,
  PerformanceDashboard,
  RecoveryResult,
  SystemHealthStatus,
)
from dbops.services.database_manager import DatabaseManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/v1/database', tags=['Database'])


class BackupKind(str, Enum):
  FULL = 'full'
  INCREMENTAL = 'incremental'


class CreateBackupRequest(BaseModel):
  """Explicit backup request."""

  backup_type: BackupKind = Field(BackupKind.FULL, description='full or incremental')
  since: Optional[datetime] = Field(
    None, description='Reference time for incremental backups (default: last backup time)'
  )


class QuickHealthResponse(BaseModel):
  healthy: bool


def get_database_manager(request: Request) -> DatabaseManager:
  """Dependency returning the application's DatabaseManager."""
  manager = getattr(request.app.state, 'database_manager', None)
  if manager is None:
    raise HTTPException(status_code=503, detail='Database manager not initialized')
  return manager


@router.get('/health', response_model=SystemHealthStatus)
async def get_system_health(manager: DatabaseManager = Depends(get_database_manager)):
  """Full health evaluation (database, backups, performance)."""
  return manager.get_system_health()


@router.get('/health/quick', response_model=QuickHealthResponse)
async def quick_health(manager: DatabaseManager = Depends(get_database_manager)):
  return QuickHealthResponse(healthy=manager.quick_health_check())


@router.get('/dashboard', response_model=PerformanceDashboard)
async def get_dashboard(manager: DatabaseManager = Depends(get_database_manager)):
  return manager.get_performance_dashboard()


@router.get('/slow-queries', response_model=List[SlowQueryReport])
async def get_slow_queries(
  days: int = Query(7, ge=1, le=90),
  manager: DatabaseManager = Depends(get_database_manager),
):
  """Slow query digests over the last ``days`` days, slowest first."""
  return manager.query_optimizer.generate_slow_query_report(days=days)


@router.get('/index-usage', response_model=List[IndexUsage])
async def get_index_usage(
  days: int = Query(30, ge=1, le=90),
  manager: DatabaseManager = Depends(get_database_manager),
):
  return manager.query_optimizer.analyze_index_usage(days=days)


@router.get('/backups', response_model=List[BackupMetadata])
async def list_backups(
  limit: int = Query(20, ge=1, le=100),
  manager: DatabaseManager = Depends(get_database_manager),
):
  return manager.backup_manager.list_backups(limit=limit)


@router.post('/backups', status_code=201, response_model=BackupMetadata)
async def create_backup(
  payload: Optional[CreateBackupRequest] = None,
  manager: DatabaseManager = Depends(get_database_manager),
):
  """Take an explicit backup.

  Returns:
      Metadata of the new backup

  Raises:
      409: Incremental backup with no changed rows, or no reference time
  """
  payload = payload or CreateBackupRequest()
  backups = manager.backup_manager
  if payload.backup_type == BackupKind.FULL:
    return backups.create_full_backup()

  since = payload.since or backups.get_last_backup_time()
  if since is None:
    raise HTTPException(status_code=409, detail='No previous backup; take a full backup first')
  try:
    return backups.create_incremental_backup(since)
  except NothingToBackupError as e:
    raise HTTPException(status_code=409, detail=str(e))


@router.post('/backups/{backup_id}/restore', response_model=RestoreResult)
async def restore_backup(
  backup_id: str,
  options: Optional[RestoreOptions] = None,
  manager: DatabaseManager = Depends(get_database_manager),
):
  """Restore a backup.

  Raises:
      404: Unknown backup id
      409: Payload failed checksum verification
      400: Restore rejected (e.g. drop_existing on an incremental backup)
  """
  options = options or RestoreOptions()
  logger.warning(f'Restore of backup {backup_id} requested (drop_existing={options.drop_existing})')
  try:
    return manager.backup_manager.restore_from_backup(backup_id, options)
  except BackupNotFoundError as e:
    raise HTTPException(status_code=404, detail=str(e))
  except BackupIntegrityError as e:
    raise HTTPException(status_code=409, detail=str(e))
  except BackupError as e:
    raise HTTPException(status_code=400, detail=str(e))


@router.post('/recovery/{backup_id}', response_model=RecoveryResult)
async def emergency_recovery(backup_id: str, manager: DatabaseManager = Depends(get_database_manager)):
  """Back up current state, restore ``backup_id`` and re-check health.

  Raises:
      404: Unknown backup id
      409: Payload failed checksum verification
      500: Database still critical after the restore
  """
  try:
    return manager.emergency_recovery(backup_id)
  except BackupNotFoundError as e:
    raise HTTPException(status_code=404, detail=str(e))
  except BackupIntegrityError as e:
    raise HTTPException(status_code=409, detail=str(e))
  except RecoveryFailedError as e:
    raise HTTPException(
      status_code=500,
      detail={'message': str(e), 'emergency_backup_id': e.emergency_backup_id},
    )
  except BackupError as e:
    raise HTTPException(status_code=400, detail=str(e))


@router.post('/optimize', response_model=OptimizationSummary)
async def optimize(manager: DatabaseManager = Depends(get_database_manager)):
  return manager.perform_comprehensive_optimization()


@router.post('/maintenance', response_model=MaintenanceSummary)
async def maintenance(manager: DatabaseManager = Depends(get_database_manager)):
  return manager.perform_routine_maintenance()
