#!/usr/bin/env python3
"""
Unit tests for the main sync orchestrator.

Runs the orchestrator end to end against an in-memory directory with a real
configuration file and state file in a temporary directory.
"""

import json
import shutil
import tempfile
import unittest
from unittest.mock import Mock, patch
import sys
import os

import yaml

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fake_client import InMemoryMembershipClient
from group_membership_sync.clients.base import MembershipClient
from group_membership_sync.clients.rest import RestMembershipClient
from group_membership_sync.config import ConfigurationError, load_config
from group_membership_sync.errors import RemoteError
from group_membership_sync.main import (
    SyncOrchestrator, EXIT_OK, EXIT_GROUP_FAILURES, EXIT_CONFIG_ERROR, EXIT_CONNECTION_ERROR
)


class OrchestratorTestCase(unittest.TestCase):
    """Shared fixtures: temp config and state file, logging setup disabled."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='membership_sync_')
        self.config_path = os.path.join(self.temp_dir, 'config.yaml')
        self.state_path = os.path.join(self.temp_dir, 'state', 'membership_state.json')
        self.client = InMemoryMembershipClient(users={'u1', 'u2', 'u3'})

        logging_patcher = patch('group_membership_sync.main.setup_logging')
        logging_patcher.start()
        self.addCleanup(logging_patcher.stop)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_config(self, memberships, **extra):
        data = {
            'service': {'type': 'rest', 'base_url': 'http://directory.test/api'},
            'memberships': memberships,
            'state_file': self.state_path,
        }
        data.update(extra)
        with open(self.config_path, 'w') as f:
            yaml.safe_dump(data, f)

    def write_state(self, records):
        os.makedirs(os.path.dirname(self.state_path), exist_ok=True)
        with open(self.state_path, 'w') as f:
            json.dump({'version': 1, 'groups': {r['target_group_id']: r for r in records}}, f)

    def read_state(self):
        with open(self.state_path) as f:
            return json.load(f)['groups']

    def run_sync(self, plan_only=False, client=None):
        orchestrator = SyncOrchestrator(self.config_path)
        with patch.object(SyncOrchestrator, '_load_client', return_value=client or self.client):
            exit_code = orchestrator.run(plan_only=plan_only)
        return orchestrator, exit_code


class TestApply(OrchestratorTestCase):
    """Test cases for create, update and delete decisions."""

    def test_first_run_creates_group(self):
        self.write_config([{'target_group_id': 42, 'user_ids': ['u1', 'u2'], 'group_ids': ['g1']}])

        orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(orchestrator.sync_stats['groups_created'], 1)
        self.assertEqual(self.client.mutations(), [
            ('add_user', '42', 'u1'),
            ('add_user', '42', 'u2'),
            ('add_group', '42', 'g1'),
        ])
        self.assertEqual(self.read_state()['42'], {
            'target_group_id': '42',
            'user_ids': ['u1', 'u2'],
            'delete_protected_user_ids': [],
            'group_ids': ['g1'],
        })
        self.assertTrue(self.client.closed)

    def test_second_run_is_noop(self):
        self.write_config([{'target_group_id': '42', 'user_ids': ['u1'],
                            'delete_protected_user_ids': ['admin']}])
        self.run_sync()
        self.client.calls.clear()

        orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(orchestrator.sync_stats['groups_unchanged'], 1)
        self.assertEqual(self.client.mutations(), [])
        self.assertEqual(self.read_state()['42']['delete_protected_user_ids'], ['admin'])

    def test_changed_users_trigger_full_sweep_update(self):
        self.write_state([{'target_group_id': '42', 'user_ids': ['u1', 'u9'],
                           'delete_protected_user_ids': [], 'group_ids': []}])
        self.client.user_members['42'] = {'u1', 'u9'}
        self.write_config([{'target_group_id': '42', 'user_ids': ['u1', 'u2']}])

        orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(orchestrator.sync_stats['groups_updated'], 1)
        self.assertEqual(self.client.mutations(), [
            ('remove_user', '42', 'u1'),
            ('remove_user', '42', 'u9'),
            ('add_user', '42', 'u1'),
            ('add_user', '42', 'u2'),
        ])
        self.assertEqual(self.read_state()['42']['user_ids'], ['u1', 'u2'])

    def test_remote_drift_is_corrected(self):
        self.write_state([{'target_group_id': '42', 'user_ids': ['u1'],
                           'delete_protected_user_ids': [], 'group_ids': []}])
        self.client.user_members['42'] = {'u1', 'intruder'}
        self.write_config([{'target_group_id': '42', 'user_ids': ['u1']}],
                          reconcile={'strategy': 'diff'})

        orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(orchestrator.sync_stats['groups_updated'], 1)
        self.assertEqual(self.client.mutations(), [('remove_user', '42', 'intruder')])
        self.assertEqual(self.client.user_members['42'], {'u1'})

    def test_unconfigured_group_is_deleted(self):
        self.write_state([{'target_group_id': '7', 'user_ids': ['a', 'b'],
                           'delete_protected_user_ids': ['b'], 'group_ids': ['g']}])
        self.client.user_members['7'] = {'a', 'b'}
        self.client.group_members['7'] = {'g'}
        self.write_config([])

        orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(orchestrator.sync_stats['groups_deleted'], 1)
        self.assertEqual(self.client.mutations(), [
            ('remove_user', '7', 'a'),
            ('remove_group', '7', 'g'),
        ])
        self.assertEqual(self.client.user_members['7'], {'b'})
        self.assertNotIn('7', self.read_state())

    def test_group_failure_does_not_stop_other_groups(self):
        self.write_config([
            {'target_group_id': '42', 'user_ids': ['ghost']},
            {'target_group_id': '43', 'user_ids': ['u1']},
        ])

        orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_GROUP_FAILURES)
        self.assertEqual(orchestrator.sync_stats['groups_failed'], 1)
        self.assertEqual(orchestrator.sync_stats['groups_created'], 1)
        self.assertIn('ghost', orchestrator.sync_stats['failures']['42'])
        self.assertEqual(self.client.mutations(), [('add_user', '43', 'u1')])
        self.assertEqual(list(self.read_state()), ['43'])

    def test_failed_mutation_keeps_previous_state(self):
        previous = {'target_group_id': '42', 'user_ids': ['u1'],
                    'delete_protected_user_ids': [], 'group_ids': []}
        self.write_state([previous])
        self.client.user_members['42'] = {'u1'}
        self.client.fail_on[('add_user', '42', 'u2')] = RemoteError("HTTP 500", status_code=500)
        self.write_config([{'target_group_id': '42', 'user_ids': ['u1', 'u2']}])

        orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_GROUP_FAILURES)
        self.assertEqual(self.read_state()['42'], previous)


class TestPlanOnly(OrchestratorTestCase):
    """Test cases for --plan runs."""

    def test_plan_reports_without_mutating(self):
        self.write_state([{'target_group_id': '7', 'user_ids': ['a'],
                           'delete_protected_user_ids': [], 'group_ids': []}])
        self.client.user_members['7'] = {'a'}
        self.write_config([{'target_group_id': '42', 'user_ids': ['u1'], 'group_ids': ['g1']}])

        orchestrator, exit_code = self.run_sync(plan_only=True)

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(self.client.mutations(), [])
        self.assertEqual(orchestrator.plans, [
            {
                'target_group_id': '42',
                'action': 'create',
                'users_to_add': ['u1'],
                'users_to_remove': [],
                'groups_to_add': ['g1'],
                'groups_to_remove': [],
            },
            {
                'target_group_id': '7',
                'action': 'delete',
                'users_to_remove': ['a'],
                'groups_to_remove': [],
            },
        ])
        self.assertIn('7', self.read_state())

    def test_plan_fails_on_unknown_user(self):
        self.write_config([{'target_group_id': '42', 'user_ids': ['ghost']}])

        orchestrator, exit_code = self.run_sync(plan_only=True)

        self.assertEqual(exit_code, EXIT_GROUP_FAILURES)
        self.assertEqual(orchestrator.plans, [])
        self.assertFalse(os.path.exists(self.state_path))


class TestErrors(OrchestratorTestCase):
    """Test cases for run-level failures and exit codes."""

    def test_missing_config_file(self):
        orchestrator = SyncOrchestrator(os.path.join(self.temp_dir, 'missing.yaml'))
        self.assertEqual(orchestrator.run(), EXIT_CONFIG_ERROR)

    def test_corrupt_state_file_is_config_error(self):
        self.write_config([])
        os.makedirs(os.path.dirname(self.state_path))
        with open(self.state_path, 'w') as f:
            f.write('{not json')

        _, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_CONFIG_ERROR)

    def test_rejected_authentication(self):
        self.write_config([{'target_group_id': '42', 'user_ids': ['u1']}])
        client = Mock(spec=MembershipClient)
        client.connect.return_value = False

        _, exit_code = self.run_sync(client=client)

        self.assertEqual(exit_code, EXIT_CONNECTION_ERROR)
        client.close.assert_called_once()

    def test_connect_raising_remote_error(self):
        self.write_config([])
        client = Mock(spec=MembershipClient)
        client.connect.side_effect = RemoteError("connection refused")

        _, exit_code = self.run_sync(client=client)

        self.assertEqual(exit_code, EXIT_CONNECTION_ERROR)


class TestClientLoading(OrchestratorTestCase):
    """Test cases for dynamic client loading."""

    def test_loads_client_for_service_type(self):
        self.write_config([])
        orchestrator = SyncOrchestrator(self.config_path)
        orchestrator.config = load_config(self.config_path)

        client = orchestrator._load_client(orchestrator.config['service'])

        self.assertIsInstance(client, RestMembershipClient)

    def test_unknown_module_is_config_error(self):
        orchestrator = SyncOrchestrator(self.config_path)
        orchestrator.config = {}

        with self.assertRaises(ConfigurationError):
            orchestrator._load_client({'type': 'rest', 'module': 'does_not_exist'})


class TestImportAndHealth(OrchestratorTestCase):
    """Test cases for import and health check."""

    @patch('builtins.print')
    def test_import_records_existing_group(self, mock_print):
        self.write_config([])
        self.client.user_members['99'] = {'u2', 'u1'}
        self.client.group_members['99'] = {'g2'}
        orchestrator = SyncOrchestrator(self.config_path)

        with patch.object(SyncOrchestrator, '_load_client', return_value=self.client):
            exit_code = orchestrator.import_group('99')

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(self.client.mutations(), [])
        self.assertEqual(self.read_state()['99'], {
            'target_group_id': '99',
            'user_ids': ['u1', 'u2'],
            'delete_protected_user_ids': [],
            'group_ids': ['g2'],
        })
        mock_print.assert_called_once()

    def test_health_check_healthy(self):
        self.write_config([{'target_group_id': '42', 'user_ids': ['u1']}])
        orchestrator = SyncOrchestrator(self.config_path)

        with patch.object(SyncOrchestrator, '_load_client', return_value=self.client):
            health = orchestrator.health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['configuration']['status'], 'pass')
        self.assertEqual(health['checks']['state_file']['status'], 'pass')
        self.assertEqual(health['checks']['client']['status'], 'pass')
        self.assertTrue(self.client.closed)

    def test_health_check_bad_config(self):
        orchestrator = SyncOrchestrator(os.path.join(self.temp_dir, 'missing.yaml'))

        health = orchestrator.health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['configuration']['status'], 'fail')
        self.assertNotIn('client', health['checks'])


if __name__ == '__main__':
    unittest.main()
