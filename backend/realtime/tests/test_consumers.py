from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from channels.layers import get_channel_layer
from channels.testing import WebsocketCommunicator
from django.contrib.auth.models import AnonymousUser
from django.test import SimpleTestCase

from realtime.consumers import ChangeFeedConsumer
from realtime.events import ChangeEvent
from realtime.middleware import _token_from_scope

DRIVER = SimpleNamespace(id=7, role='driver', is_operator=False, is_anonymous=False)
OPERATOR = SimpleNamespace(id=1, role='operator', is_operator=True, is_anonymous=False)


def as_user(user):
	consumer = ChangeFeedConsumer.as_asgi()

	async def application(scope, receive, send):
		return await consumer(dict(scope, user=user), receive, send)
	return application


def change_message(**snapshot):
	values = {'id': 42, 'status': 'pending', 'driver_id': 7, 'updated_at': '2026-03-01T10:00:00+00:00'}
	values.update(snapshot)
	event = ChangeEvent(entity_type='rides', entity_id=values['id'], event_kind='updated', snapshot=values)
	return {'type': 'change.event', 'event': event.as_message()}


class ChangeFeedConsumerTests(SimpleTestCase):
	# Consumer dispatch closes stale connections, which counts as database access
	databases = {'default'}

	async def open(self, user=DRIVER):
		communicator = WebsocketCommunicator(as_user(user), '/ws/changes/')
		connected, _ = await communicator.connect()
		self.assertTrue(connected)
		greeting = await communicator.receive_json_from()
		self.assertEqual(greeting['type'], 'connection_established')
		self.assertIn('rides', greeting['tables'])
		return communicator

	async def request(self, communicator, message):
		await communicator.send_json_to(message)
		return await communicator.receive_json_from()

	async def test_anonymous_connection_rejected(self):
		communicator = WebsocketCommunicator(as_user(AnonymousUser()), '/ws/changes/')

		connected, code = await communicator.connect()

		self.assertFalse(connected)
		self.assertEqual(code, 4401)

	async def test_driver_receives_own_ride_changes(self):
		communicator = await self.open()

		response = await self.request(communicator, {
			'type': 'subscribe',
			'filters': [{'table': 'rides', 'filter': 'driver_id=eq.7'}],
		})
		await get_channel_layer().group_send('changes.rides.driver_id.7', change_message())
		change = await communicator.receive_json_from()

		self.assertEqual(response['type'], 'subscribed')
		self.assertEqual(response['subscriptions'][0]['id'], 'sub-1')
		self.assertEqual(change['type'], 'change')
		self.assertEqual(change['subscription_ids'], ['sub-1'])
		self.assertEqual(change['event']['snapshot']['id'], 42)
		await communicator.disconnect()

	async def test_event_sent_once_when_several_groups_match(self):
		communicator = await self.open()
		await self.request(communicator, {
			'type': 'subscribe',
			'filters': [
				{'table': 'rides', 'filter': 'driver_id=eq.7'},
				{'table': 'rides', 'filter': 'status=eq.pending'},
			],
		})
		message = change_message()
		layer = get_channel_layer()

		await layer.group_send('changes.rides.driver_id.7', message)
		await layer.group_send('changes.rides.status.pending', message)
		change = await communicator.receive_json_from()

		self.assertEqual(sorted(change['subscription_ids']), ['sub-1', 'sub-2'])
		self.assertTrue(await communicator.receive_nothing())
		await communicator.disconnect()

	async def test_whole_table_needs_operator(self):
		driver = await self.open()
		operator = await self.open(OPERATOR)

		refused = await self.request(driver, {'type': 'subscribe', 'table': 'rides'})
		allowed = await self.request(operator, {'type': 'subscribe', 'table': 'rides'})

		self.assertEqual(refused['type'], 'error')
		self.assertEqual(refused['error'], 'forbidden')
		self.assertEqual(allowed['type'], 'subscribed')
		await driver.disconnect()
		await operator.disconnect()

	async def test_other_drivers_bids_refused(self):
		communicator = await self.open()

		response = await self.request(communicator, {'type': 'subscribe', 'table': 'bids', 'filter': 'driver_id=eq.8'})

		self.assertEqual(response['error'], 'forbidden')
		await communicator.disconnect()

	async def test_invalid_filter_reported(self):
		communicator = await self.open()

		response = await self.request(communicator, {'type': 'subscribe', 'table': 'rides', 'filter': 'driver_id>7'})

		self.assertEqual(response['error'], 'validation_error')
		await communicator.disconnect()

	async def test_ride_scoped_filters_check_ride_access(self):
		communicator = await self.open()

		with patch.object(ChangeFeedConsumer, '_can_view_ride', AsyncMock(return_value=False)) as can_view:
			refused = await self.request(communicator, {
				'type': 'subscribe', 'table': 'errand_tasks', 'filter': 'ride_id=eq.42',
			})
		with patch.object(ChangeFeedConsumer, '_can_view_ride', AsyncMock(return_value=True)):
			allowed = await self.request(communicator, {
				'type': 'subscribe', 'table': 'errand_tasks', 'filter': 'ride_id=eq.42',
			})

		can_view.assert_awaited_once_with('42')
		self.assertEqual(refused['error'], 'forbidden')
		self.assertEqual(allowed['subscriptions'][0]['filter'], 'ride_id=eq.42')
		await communicator.disconnect()

	async def test_ride_subscription_dropped_once_assigned_elsewhere(self):
		communicator = await self.open()
		with patch.object(ChangeFeedConsumer, '_can_view_ride', AsyncMock(return_value=True)):
			await self.request(communicator, {
				'type': 'subscribe',
				'filters': [
					{'table': 'rides', 'filter': 'id=eq.42'},
					{'table': 'errand_tasks', 'filter': 'ride_id=eq.42'},
				],
			})

		await get_channel_layer().group_send('changes.rides.id.42', change_message(status='offered', driver_id=None))
		still_open = await communicator.receive_json_from()
		await get_channel_layer().group_send('changes.rides.id.42', change_message(status='assigned', driver_id=9))
		revoked = await communicator.receive_json_from()
		pong = await self.request(communicator, {'type': 'ping'})

		self.assertEqual(still_open['type'], 'change')
		self.assertEqual(revoked['type'], 'unsubscribed')
		self.assertEqual(revoked['reason'], 'access_revoked')
		self.assertEqual(revoked['subscription_ids'], ['sub-1', 'sub-2'])
		self.assertEqual(pong['subscriptions'], 0)
		await communicator.disconnect()

	async def test_task_subscription_rechecked_against_ride(self):
		communicator = await self.open()
		with patch.object(ChangeFeedConsumer, '_can_view_ride', AsyncMock(return_value=True)):
			await self.request(communicator, {'type': 'subscribe', 'table': 'errand_tasks', 'filter': 'ride_id=eq.42'})
		event = ChangeEvent(entity_type='errand_tasks', entity_id=5, event_kind='updated', snapshot={'id': 5, 'ride_id': 42, 'state': 'active'})

		with patch.object(ChangeFeedConsumer, '_can_view_ride', AsyncMock(return_value=False)) as can_view:
			await get_channel_layer().group_send(
				'changes.errand_tasks.ride_id.42', {'type': 'change.event', 'event': event.as_message()},
			)
			revoked = await communicator.receive_json_from()

		can_view.assert_awaited_once_with('42')
		self.assertEqual(revoked['type'], 'unsubscribed')
		self.assertEqual(revoked['subscription_ids'], ['sub-1'])
		self.assertTrue(await communicator.receive_nothing())
		await communicator.disconnect()

	async def test_assigned_driver_keeps_ride_subscription(self):
		communicator = await self.open()
		with patch.object(ChangeFeedConsumer, '_can_view_ride', AsyncMock(return_value=True)):
			await self.request(communicator, {'type': 'subscribe', 'table': 'rides', 'filter': 'id=eq.42'})

		await get_channel_layer().group_send('changes.rides.id.42', change_message(status='assigned', driver_id=7))
		change = await communicator.receive_json_from()

		self.assertEqual(change['type'], 'change')
		self.assertEqual(change['subscription_ids'], ['sub-1'])
		await communicator.disconnect()

	async def test_failed_resync_keeps_current_set(self):
		communicator = await self.open()
		await self.request(communicator, {'type': 'subscribe', 'table': 'rides', 'filter': 'driver_id=eq.7'})

		response = await self.request(communicator, {
			'type': 'resync',
			'filters': [{'table': 'bids', 'filter': 'driver_id=eq.7'}, {'table': 'bids'}],
		})
		pong = await self.request(communicator, {'type': 'ping'})

		self.assertEqual(response['type'], 'error')
		self.assertEqual(pong['type'], 'pong')
		self.assertEqual(pong['subscriptions'], 1)
		await communicator.disconnect()

	async def test_resync_replaces_subscriptions(self):
		communicator = await self.open()
		await self.request(communicator, {'type': 'subscribe', 'table': 'rides', 'filter': 'driver_id=eq.7'})

		response = await self.request(communicator, {
			'type': 'resync',
			'filters': [{'table': 'bids', 'filter': 'driver_id=eq.7'}],
		})
		await get_channel_layer().group_send('changes.rides.driver_id.7', change_message())

		self.assertEqual(response['type'], 'resynced')
		self.assertEqual([s['table'] for s in response['subscriptions']], ['bids'])
		self.assertTrue(await communicator.receive_nothing())
		await communicator.disconnect()

	async def test_unsubscribe_all(self):
		communicator = await self.open()
		await self.request(communicator, {'type': 'subscribe', 'table': 'rides', 'filter': 'driver_id=eq.7'})

		response = await self.request(communicator, {'type': 'unsubscribe', 'all': True})
		await get_channel_layer().group_send('changes.rides.driver_id.7', change_message())

		self.assertEqual(response['subscription_ids'], ['sub-1'])
		self.assertTrue(await communicator.receive_nothing())
		await communicator.disconnect()

	async def test_unknown_message_type(self):
		communicator = await self.open()

		response = await self.request(communicator, {'type': 'teleport'})

		self.assertEqual(response['type'], 'error')
		self.assertIn('Unknown message type', response['message'])
		await communicator.disconnect()


class TokenFromScopeTests(SimpleTestCase):
	def test_query_string_token(self):
		self.assertEqual(_token_from_scope({'query_string': b'token=abc.def'}), 'abc.def')

	def test_bearer_header(self):
		scope = {'query_string': b'', 'headers': [(b'authorization', b'Bearer xyz')]}

		self.assertEqual(_token_from_scope(scope), 'xyz')

	def test_no_token(self):
		self.assertIsNone(_token_from_scope({'query_string': b'', 'headers': [(b'cookie', b'sessionid=1')]}))
