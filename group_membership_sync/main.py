"""
Main orchestrator for Group Membership Sync.

Loads the declared memberships, decides per group whether to create, update or
delete based on the applied-state file, and drives the reconciler against the
configured directory client.
"""

import sys
import json
import logging
import argparse
import importlib
from datetime import datetime
from typing import Any, Dict, List, Optional

from group_membership_sync.config import load_config, ConfigurationError
from group_membership_sync.clients.base import MembershipClient
from group_membership_sync.errors import MembershipError, ReconcileError
from group_membership_sync.logging_setup import setup_logging
from group_membership_sync.models import DesiredState
from group_membership_sync.projector import StateProjector
from group_membership_sync.reconciler import MembershipReconciler
from group_membership_sync.state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_GROUP_FAILURES = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED = 4


class SyncError(Exception):
    """Base exception for orchestration errors."""
    pass


class ClientConnectionError(SyncError):
    """Raised when the directory client cannot connect or authenticate."""
    pass


class SyncOrchestrator:
    """
    Runs reconciliation for every configured membership.

    A failure in one group is logged and counted, and the run moves on to the next group.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config = None
        self.config_path = config_path
        self.client = None
        self.reconciler = None
        self.state_store = None

        self.sync_stats = {
            'groups_created': 0,
            'groups_updated': 0,
            'groups_unchanged': 0,
            'groups_deleted': 0,
            'groups_failed': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'failures': {}
        }
        self.plans: List[Dict[str, Any]] = []

    def run(self, plan_only: bool = False) -> int:
        """
        Run the complete reconciliation process.

        Args:
            plan_only: Validate and report intended changes without applying them

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()
            self._prepare()
            logger.info(f"Starting Group Membership Sync ({'plan' if plan_only else 'apply'})")

            self._process_memberships(plan_only)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()

            if self.sync_stats['groups_failed'] > 0:
                logger.warning(f"Sync completed with {self.sync_stats['groups_failed']} group failures")
                return EXIT_GROUP_FAILURES
            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except ClientConnectionError as e:
            logger.error(f"Client connection error: {e}")
            return EXIT_CONNECTION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def import_group(self, group_id: str) -> int:
        """
        Adopt an existing remote group into the state file by id.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._prepare()
            observed = self.reconciler.import_state(group_id)
            record = StateProjector.to_record(observed)
            self.state_store.put(record)
            logger.info(f"Imported group {group_id}: {len(observed.user_ids)} users, "
                        f"{len(observed.group_ids)} groups")
            print(json.dumps(record, indent=2))
            return EXIT_OK
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except ClientConnectionError as e:
            logger.error(f"Client connection error: {e}")
            return EXIT_CONNECTION_ERROR
        except (ReconcileError, StateStoreError) as e:
            logger.error(f"Import of group {group_id} failed: {e}")
            return EXIT_GROUP_FAILURES
        finally:
            self._cleanup()

    def _prepare(self):
        self._load_configuration()
        self._setup_logging()
        self.state_store = StateStore(self.config['state_file'])
        try:
            self.state_store.load()
        except StateStoreError as e:
            raise ConfigurationError(str(e))
        self.client = self._load_client(self.config['service'])
        self._connect_client()
        self.reconciler = MembershipReconciler(
            self.client, strategy=self.config['reconcile']['strategy']
        )

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is not None:
            return
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _load_client(self, service_config: Dict[str, Any]) -> MembershipClient:
        """Import the client module for the service type and instantiate its client class."""
        module_name = service_config.get('module') or service_config['type']
        full_module_name = f"group_membership_sync.clients.{module_name}"

        try:
            client_module = importlib.import_module(full_module_name)
        except ImportError as e:
            raise ConfigurationError(f"Failed to import client module {module_name}: {e}")

        client_class = None
        for attr_name in dir(client_module):
            attr = getattr(client_module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, MembershipClient) and
                    attr is not MembershipClient):
                client_class = attr
                break

        if not client_class:
            raise ConfigurationError(f"No MembershipClient subclass found in module {module_name}")

        try:
            return client_class(service_config, self.config.get('error_handling', {}))
        except (KeyError, ValueError, MembershipError) as e:
            raise ConfigurationError(f"Failed to initialize {module_name} client: {e}")

    def _connect_client(self):
        try:
            connected = self.client.connect()
        except MembershipError as e:
            raise ClientConnectionError(str(e))
        if not connected:
            raise ClientConnectionError(f"Authentication failed for {self.client.name}")

    def _process_memberships(self, plan_only: bool):
        """Reconcile configured memberships, then remove ones no longer configured."""
        desired_states = [DesiredState.from_record(record) for record in self.config['memberships']]
        configured_ids = {desired.target_group_id for desired in desired_states}

        for desired in desired_states:
            self._guarded(desired.target_group_id, self._process_membership, desired, plan_only)

        for group_id in self.state_store.group_ids():
            if group_id not in configured_ids:
                self._guarded(group_id, self._process_removal, group_id, plan_only)

    def _guarded(self, group_id: str, func, *args):
        try:
            func(*args)
        except (ReconcileError, StateStoreError) as e:
            logger.error(f"Error reconciling group {group_id}: {e}")
            self.sync_stats['groups_failed'] += 1
            self.sync_stats['failures'][group_id] = str(e)

    def _process_membership(self, desired: DesiredState, plan_only: bool):
        group_id = desired.target_group_id
        prior = self.state_store.get(group_id)
        if prior is not None:
            prior = self._refresh(group_id, prior)
        plan = self.reconciler.plan(desired, prior)
        logger.info(f"Group {group_id}: planned {plan.action}")

        if plan_only:
            self.plans.append(plan.to_dict())
            return

        if plan.action == 'create':
            observed = self.reconciler.create(desired)
            self.sync_stats['groups_created'] += 1
        elif plan.action == 'update':
            observed = self.reconciler.update(desired)
            self.sync_stats['groups_updated'] += 1
        else:
            record = dict(prior)
            record['delete_protected_user_ids'] = sorted(desired.delete_protected_user_ids)
            record.pop('delete_protected_group_ids', None)
            if desired.delete_protected_group_ids:
                record['delete_protected_group_ids'] = sorted(desired.delete_protected_group_ids)
            self.state_store.put(record)
            self.sync_stats['groups_unchanged'] += 1
            return

        self.state_store.put(StateProjector.to_record(
            observed, desired.delete_protected_user_ids, desired.delete_protected_group_ids
        ))

    def _refresh(self, group_id: str, prior: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the stored member lists with the group's live membership."""
        observed = self.reconciler.read(group_id)
        return StateProjector.to_record(
            observed,
            prior.get('delete_protected_user_ids') or (),
            prior.get('delete_protected_group_ids') or (),
        )

    def _process_removal(self, group_id: str, plan_only: bool):
        prior = self.state_store.get(group_id)
        desired = DesiredState.from_record(prior)

        if plan_only:
            self.plans.append({
                'target_group_id': group_id,
                'action': 'delete',
                'users_to_remove': sorted(desired.user_ids - desired.delete_protected_user_ids),
                'groups_to_remove': sorted(desired.group_ids - desired.delete_protected_group_ids),
            })
            return

        self.reconciler.delete(desired)
        self.state_store.remove(group_id)
        self.sync_stats['groups_deleted'] += 1

    def _log_sync_summary(self):
        """Log final reconciliation statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Groups created: {stats['groups_created']}")
        logger.info(f"Groups updated: {stats['groups_updated']}")
        logger.info(f"Groups unchanged: {stats['groups_unchanged']}")
        logger.info(f"Groups deleted: {stats['groups_deleted']}")
        logger.info(f"Groups failed: {stats['groups_failed']}")
        for group_id, error in stats['failures'].items():
            logger.info(f"  {group_id}: {error}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of configuration, state file and client connectivity.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': f"{len(self.config['memberships'])} memberships configured"
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            StateStore(self.config['state_file']).load()
            health_status['checks']['state_file'] = {'status': 'pass', 'message': 'State file readable'}
        except StateStoreError as e:
            health_status['checks']['state_file'] = {'status': 'fail', 'message': str(e)}
            health_status['status'] = 'unhealthy'

        try:
            self.client = self._load_client(self.config['service'])
            self._connect_client()
            health_status['checks']['client'] = {
                'status': 'pass',
                'message': f"{self.client.name} client connected"
            }
        except (ConfigurationError, ClientConnectionError) as e:
            health_status['checks']['client'] = {
                'status': 'fail',
                'message': f'Client connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            self._cleanup()

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.client:
            self.client.close()
            self.client = None


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Group Membership Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--plan', action='store_true',
                       help='Validate and show intended changes without applying them')
    group.add_argument('--import', dest='import_group_id', metavar='GROUP_ID',
                       help='Record an existing group in the state file by id')
    group.add_argument('--health-check', action='store_true',
                       help='Perform health check instead of sync')

    args = parser.parse_args()
    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.import_group_id:
        sys.exit(orchestrator.import_group(args.import_group_id))

    exit_code = orchestrator.run(plan_only=args.plan)
    if args.plan:
        print(json.dumps(orchestrator.plans, indent=2))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
