from unittest.mock import AsyncMock, MagicMock, patch

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.test import SimpleTestCase, TestCase

from realtime.events import ChangeEvent, merge_snapshot
from realtime.filters import SubscriptionFilter, group_names_for
from realtime.propagation import deliver, filterable_values, publish_change
from rides.models import RideStatus
from rides.tests.helpers import make_passenger, make_ride
from services.exceptions import ValidationError


def ride_event(kind='updated', previous=None, **snapshot):
	values = {'id': 5, 'status': 'assigned', 'driver_id': 7, 'passenger_id': 3,
		'updated_at': '2026-03-01T10:00:00+00:00'}
	values.update(snapshot)
	return ChangeEvent(entity_type='rides', entity_id=values['id'], event_kind=kind,
		snapshot=values, previous=previous or {})


class SubscriptionFilterTests(SimpleTestCase):
	def test_parse(self):
		f = SubscriptionFilter.parse('rides', 'updated', 'driver_id=eq.7')

		self.assertEqual(f.group_name, 'changes.rides.driver_id.7')
		self.assertEqual(f.as_dict(), {'table': 'rides', 'event': 'updated', 'filter': 'driver_id=eq.7'})

	def test_whole_table_filter(self):
		f = SubscriptionFilter.from_dict({'table': 'bids'})

		self.assertEqual(f.group_name, 'changes.bids')
		self.assertEqual(f.event, '*')
		self.assertIsNone(f.expression)

	def test_parse_errors(self):
		cases = [
			('payments', None, None),
			('rides', 'renamed', None),
			('rides', None, 'driver_id=7'),
			('rides', None, 'driver_id=neq.7'),
			('bids', None, 'amount=eq.10'),
		]
		for table, event, expr in cases:
			with self.subTest(table=table, event=event, expr=expr):
				with self.assertRaises(ValidationError):
					SubscriptionFilter.parse(table, event, expr)

	def test_matches_old_and_new_values(self):
		event = ride_event(previous={'status': 'offered'})

		self.assertTrue(SubscriptionFilter.parse('rides', None, 'status=eq.assigned').matches(event))
		self.assertTrue(SubscriptionFilter.parse('rides', None, 'status=eq.offered').matches(event))
		self.assertFalse(SubscriptionFilter.parse('rides', None, 'status=eq.pending').matches(event))

	def test_event_kind_and_table_must_match(self):
		event = ride_event()

		self.assertFalse(SubscriptionFilter.parse('rides', 'created').matches(event))
		self.assertFalse(SubscriptionFilter.parse('bids').matches(event))
		self.assertTrue(SubscriptionFilter.parse('rides', 'updated').matches(event))

	def test_groups_cover_previous_values(self):
		groups = group_names_for(ride_event(previous={'status': 'offered'}))

		self.assertEqual(groups[0], 'changes.rides')
		for name in ('changes.rides.status.assigned', 'changes.rides.status.offered',
				'changes.rides.driver_id.7', 'changes.rides.id.5'):
			self.assertIn(name, groups)
		self.assertEqual(len(groups), len(set(groups)))


class MergeSnapshotTests(SimpleTestCase):
	def test_newer_update_wins(self):
		current = ride_event().snapshot
		newer = ride_event(status='in_progress', updated_at='2026-03-01T10:05:00+00:00')

		self.assertEqual(merge_snapshot(current, newer)['status'], 'in_progress')

	def test_stale_update_ignored(self):
		current = ride_event(status='in_progress', updated_at='2026-03-01T10:05:00+00:00').snapshot

		merged = merge_snapshot(current, ride_event())

		self.assertIs(merged, current)

	def test_delete_and_first_sight(self):
		self.assertIsNone(merge_snapshot({'id': 5}, ride_event(kind='deleted')))
		self.assertEqual(merge_snapshot(None, ride_event())['driver_id'], 7)

	def test_message_round_trip_keeps_event_id(self):
		event = ride_event()

		self.assertEqual(ChangeEvent.from_message(event.as_message()).event_id, event.event_id)


class PropagationTests(TestCase):
	def setUp(self):
		self.passenger = make_passenger()
		self.ride = make_ride(self.passenger)

	@patch('realtime.propagation.deliver')
	def test_published_after_commit_with_previous_values(self, mock_deliver):
		previous = filterable_values('rides', self.ride)
		self.ride.status = RideStatus.OFFERED

		with self.captureOnCommitCallbacks(execute=True) as callbacks:
			self.ride.save()
			event = publish_change('rides', self.ride, previous=previous)
			mock_deliver.assert_not_called()

		self.assertEqual(len(callbacks), 1)
		mock_deliver.assert_called_once_with(event)
		self.assertEqual(event.previous, {'status': 'pending'})
		self.assertEqual(event.snapshot['status'], 'offered')
		self.assertEqual(event.snapshot['passenger_id'], self.passenger.id)

	def test_deliver_reaches_filtered_group(self):
		layer = get_channel_layer()
		channel = async_to_sync(layer.new_channel)()
		group = 'changes.rides.id.%d' % self.ride.id
		async_to_sync(layer.group_add)(group, channel)
		event = publish_change('rides', self.ride, event_kind='created')

		self.assertTrue(deliver(event))

		message = async_to_sync(layer.receive)(channel)
		async_to_sync(layer.group_discard)(group, channel)
		self.assertEqual(message['type'], 'change.event')
		self.assertEqual(message['event']['event_id'], event.event_id)

	@patch('realtime.propagation.get_channel_layer')
	def test_delivery_failure_is_logged(self, mock_layer):
		mock_layer.return_value = MagicMock(group_send=AsyncMock(side_effect=RuntimeError('redis down')))

		with self.assertLogs('realtime.propagation', level='ERROR'):
			self.assertFalse(deliver(ride_event()))
