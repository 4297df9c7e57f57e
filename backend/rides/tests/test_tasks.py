from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase

from rides.models import CostAuditRecord, ErrandTask, RideStatus, TaskState
from services.bidding import accept_bid, submit_bid
from services.exceptions import (
	InvalidTransition,
	OutOfOrder,
	PermissionDenied,
	PreconditionFailed,
	ValidationError,
)
from services.ride_management import (
	TASK_STATE_ORDER,
	advance_task,
	complete_ride,
	describe_task_state,
	normalize_task_state,
	ride_progress,
	start_ride,
)
from .helpers import make_driver, make_errand_ride, make_passenger

WALK = ['activated', 'driver_on_way', 'driver_arrived', 'started']


class TaskStateNormalizationTests(TestCase):
	def test_empty_state_reads_as_pending(self):
		self.assertEqual(normalize_task_state(''), TaskState.PENDING)
		self.assertEqual(normalize_task_state(None), TaskState.PENDING)

	def test_legacy_aliases_are_translated(self):
		self.assertEqual(normalize_task_state('driver_en_route'), TaskState.DRIVER_ON_WAY)
		self.assertEqual(normalize_task_state('Task_Started'), TaskState.STARTED)
		self.assertEqual(normalize_task_state('complete_task'), TaskState.COMPLETED)

	def test_unknown_state_is_rejected_and_logged(self):
		with self.assertLogs('services.ride_management.task_lifecycle', level='WARNING'):
			with self.assertRaises(ValidationError):
				normalize_task_state('teleported')

	def test_labels(self):
		self.assertEqual(describe_task_state('driver_arrived'), 'Driver arrived')


class TaskStateMachineTests(TestCase):
	def setUp(self):
		self.passenger = make_passenger()
		self.driver = make_driver('driver_one', 'WB-1001')
		self.ride = make_errand_ride(self.passenger, task_count=3)
		bid = submit_bid(self.ride.id, self.driver, '19.99').bid
		accept_bid(self.ride.id, bid.id, self.passenger)
		self.ride.refresh_from_db()
		self.tasks = list(self.ride.tasks.order_by('order'))

	def advance(self, task, expected, **kwargs):
		return advance_task(self.ride.id, task.id, expected, self.driver, **kwargs)

	def assert_single_active_task(self):
		busy = self.ride.tasks.exclude(state__in=[TaskState.PENDING, TaskState.COMPLETED]).count()
		self.assertLessEqual(busy, 1)

	def test_walking_every_task_completes_the_ride(self):
		for index, task in enumerate(self.tasks):
			for expected in WALK:
				self.advance(task, expected)
				self.assert_single_active_task()
			if index == 0:
				self.ride.refresh_from_db()
				self.assertEqual(self.ride.status, RideStatus.IN_PROGRESS)

		self.ride.refresh_from_db()
		self.driver.driver_profile.refresh_from_db()
		self.assertEqual(self.ride.status, RideStatus.COMPLETED)
		self.assertEqual(self.ride.tasks_done, 3)
		self.assertEqual(self.ride.final_cost, Decimal('19.99'))
		self.assertIsNotNone(self.ride.archived_at)
		self.assertEqual(self.driver.driver_profile.status, 'available')

	def test_history_never_moves_backwards(self):
		task = self.tasks[0]
		for expected in WALK:
			self.advance(task, expected)

		actions = list(task.history.values_list('action', flat=True))
		indexes = [TASK_STATE_ORDER.index(action) for action in actions]
		self.assertEqual(indexes, sorted(indexes))
		self.assertEqual(actions[-1], TaskState.COMPLETED)
		self.assertEqual(task.history.last().actor_type, 'driver')

	def test_next_task_activates_after_completion(self):
		for expected in WALK:
			self.advance(self.tasks[0], expected)

		self.tasks[1].refresh_from_db()
		self.assertEqual(self.tasks[1].state, TaskState.ACTIVATED)
		self.assertEqual(ride_progress(self.ride)['active_task_id'], self.tasks[1].id)

	def test_non_active_task_is_out_of_order(self):
		self.tasks[0].state = TaskState.COMPLETED
		self.tasks[0].save()
		self.tasks[1].state = TaskState.STARTED
		self.tasks[1].save()
		self.ride.status = RideStatus.IN_PROGRESS
		self.ride.save()

		with self.assertRaises(OutOfOrder):
			self.advance(self.tasks[2], 'pending')

	def test_skipping_a_state_is_invalid(self):
		with self.assertRaises(InvalidTransition):
			self.advance(self.tasks[0], 'activated', to_state='started')

	def test_moving_backwards_is_invalid(self):
		with self.assertRaises(InvalidTransition):
			self.advance(self.tasks[0], 'driver_on_way', to_state='activated')

	def test_stale_expected_state_is_precondition_failure(self):
		with self.assertRaises(PreconditionFailed) as ctx:
			self.advance(self.tasks[0], 'driver_on_way')
		self.assertIs(type(ctx.exception), PreconditionFailed)

	@patch('realtime.propagation.deliver')
	def test_retry_is_a_noop(self, mock_deliver):
		self.advance(self.tasks[0], 'activated')

		with self.captureOnCommitCallbacks(execute=True):
			result = self.advance(self.tasks[0], 'activated')

		self.assertFalse(result.changed)
		self.assertEqual(self.tasks[0].history.count(), 2)
		mock_deliver.assert_not_called()

	def test_only_assigned_driver_can_advance(self):
		other = make_driver('driver_two', 'WB-1002')

		with self.assertRaises(PermissionDenied):
			advance_task(self.ride.id, self.tasks[0].id, 'activated', other)

	def test_errand_ride_cannot_be_started_directly(self):
		with self.assertRaises(PreconditionFailed):
			start_ride(self.ride.id, self.driver)

	def test_errand_ride_cannot_complete_with_open_tasks(self):
		self.advance(self.tasks[0], 'activated')
		self.advance(self.tasks[0], 'driver_on_way')
		self.advance(self.tasks[0], 'driver_arrived')

		with self.assertRaisesMessage(PreconditionFailed, 'not completed yet'):
			complete_ride(self.ride.id, self.driver)

	def test_completion_audits_task_costs_after_commit(self):
		for task in self.tasks[:2]:
			for expected in WALK:
				self.advance(task, expected)
		for expected in WALK[:-1]:
			self.advance(self.tasks[2], expected)
		ErrandTask.objects.filter(pk=self.tasks[2].pk).update(cost=Decimal('1.00'))

		with self.captureOnCommitCallbacks(execute=True):
			self.advance(self.tasks[2], 'started')

		record = CostAuditRecord.objects.get(ride=self.ride)
		self.assertEqual(record.expected_total, Decimal('19.99'))
		self.assertEqual(record.actual_total, Decimal('14.32'))
		self.assertEqual(record.defects[0]['kind'], 'total_mismatch')
