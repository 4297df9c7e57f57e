from unittest.mock import patch

from django.core.cache import cache
from django.test import TestCase
from rest_framework.test import APIRequestFactory, force_authenticate

from app_backend.views import health_check
from rides import views
from rides.models import BidStatus, RideStatus, TaskState
from services.bidding import ALREADY_ASSIGNED_MESSAGE, accept_bid, submit_bid
from .helpers import make_driver, make_errand_ride, make_passenger, make_ride


class ApiTestCase(TestCase):
	def setUp(self):
		cache.clear()
		self.factory = APIRequestFactory()
		self.passenger = make_passenger()
		self.driver = make_driver('driver_one', 'WB-1001')

	def post(self, view, user, data=None, **kwargs):
		request = self.factory.post('/api/', data or {}, format='json')
		force_authenticate(request, user=user)
		return view(request, **kwargs)

	def get(self, view, user, **kwargs):
		request = self.factory.get('/api/')
		force_authenticate(request, user=user)
		return view(request, **kwargs)


class RideApiTests(ApiTestCase):
	def test_create_ride(self):
		response = self.post(views.create_ride, self.passenger, {
			'service_type': 'taxi',
			'pickup_address': 'Connaught Place',
			'dropoff_address': 'India Gate',
			'distance_km': '5',
		})

		self.assertEqual(response.status_code, 201)
		self.assertTrue(response.data['success'])
		self.assertEqual(response.data['ride']['status'], RideStatus.PENDING)
		self.assertEqual(response.data['ride']['total_fare'], '3.00')

	def test_create_ride_rejects_unknown_service(self):
		response = self.post(views.create_ride, self.passenger, {'service_type': 'helicopter'})

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['error'], 'validation_error')

	def test_create_ride_requires_authentication(self):
		request = self.factory.post('/api/', {'service_type': 'taxi'}, format='json')

		response = views.create_ride(request)

		self.assertEqual(response.status_code, 401)

	def test_ride_hidden_from_unrelated_passenger(self):
		ride = make_ride(self.passenger)
		stranger = make_passenger('stranger')

		response = self.get(views.ride_detail, stranger, ride_id=ride.id)

		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['error'], 'forbidden')

	def test_missing_ride(self):
		response = self.get(views.ride_detail, self.passenger, ride_id=99999)

		self.assertEqual(response.status_code, 404)

	def test_passenger_cannot_start_ride(self):
		ride = make_ride(self.passenger)
		bid = submit_bid(ride.id, self.driver, '10.00').bid
		accept_bid(ride.id, bid.id, self.passenger)

		response = self.post(views.start_ride, self.passenger, ride_id=ride.id)

		self.assertEqual(response.status_code, 403)

	def test_cancel_with_reason(self):
		ride = make_ride(self.passenger)

		response = self.post(views.cancel_ride, self.passenger, {'reason': 'Plans changed'}, ride_id=ride.id)

		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['changed'])
		self.assertEqual(response.data['ride']['status'], RideStatus.CANCELLED)
		self.assertEqual(response.data['ride']['cancellation_reason'], 'Plans changed')


class BidApiTests(ApiTestCase):
	def setUp(self):
		super().setUp()
		self.ride = make_ride(self.passenger)

	def test_driver_places_bid(self):
		response = self.post(views.ride_bids, self.driver, {'amount': '12.50'}, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['bid']['amount'], '12.50')
		self.assertEqual(response.data['ride_status'], RideStatus.OFFERED)

	def test_invalid_bid_amount_message(self):
		response = self.post(views.ride_bids, self.driver, {'amount': '0.50'}, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['message'], 'Minimum bid is $1.00')

	def test_drivers_only_list_their_own_bids(self):
		other = make_driver('driver_two', 'WB-1002')
		submit_bid(self.ride.id, self.driver, '12.00')
		submit_bid(self.ride.id, other, '11.00')

		driver_view = self.get(views.ride_bids, self.driver, ride_id=self.ride.id)
		passenger_view = self.get(views.ride_bids, self.passenger, ride_id=self.ride.id)

		self.assertEqual(driver_view.data['count'], 1)
		self.assertEqual(passenger_view.data['count'], 2)
		self.assertEqual(passenger_view.data['bids'][0]['amount'], '11.00')

	def test_losing_acceptance_returns_conflict(self):
		other = make_driver('driver_two', 'WB-1002')
		first = submit_bid(self.ride.id, self.driver, '12.00').bid
		second = submit_bid(self.ride.id, other, '11.00').bid

		accepted = self.post(views.accept_bid, self.passenger, ride_id=self.ride.id, bid_id=second.id)
		with self.assertLogs('rides.views', level='INFO'):
			lost = self.post(views.accept_bid, self.passenger, ride_id=self.ride.id, bid_id=first.id)

		self.assertEqual(accepted.status_code, 200)
		self.assertEqual(accepted.data['bid']['status'], BidStatus.ACCEPTED)
		self.assertEqual(accepted.data['ride']['driver_id'], other.id)
		self.assertEqual(lost.status_code, 409)
		self.assertEqual(lost.data['error'], 'already_assigned')
		self.assertEqual(lost.data['message'], ALREADY_ASSIGNED_MESSAGE)

	def test_only_owner_accepts(self):
		bid = submit_bid(self.ride.id, self.driver, '12.00').bid

		response = self.post(views.accept_bid, self.driver, ride_id=self.ride.id, bid_id=bid.id)

		self.assertEqual(response.status_code, 403)

	def test_withdraw_bid(self):
		bid = submit_bid(self.ride.id, self.driver, '12.00').bid

		response = self.post(views.withdraw_bid, self.driver, {'reason': 'Too far'}, bid_id=bid.id)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['bid']['status'], BidStatus.WITHDRAWN)
		self.assertEqual(response.data['ride_status'], RideStatus.PENDING)


class TaskApiTests(ApiTestCase):
	def setUp(self):
		super().setUp()
		self.ride = make_errand_ride(self.passenger)
		bid = submit_bid(self.ride.id, self.driver, '19.99').bid
		accept_bid(self.ride.id, bid.id, self.passenger)
		self.tasks = list(self.ride.tasks.order_by('order'))

	def advance(self, task, data):
		return self.post(views.advance_task, self.driver, data, ride_id=self.ride.id, task_id=task.id)

	def test_advance_active_task(self):
		response = self.advance(self.tasks[0], {'expected_from_state': 'activated'})

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['task']['state'], TaskState.DRIVER_ON_WAY)
		self.assertEqual(response.data['ride_status'], RideStatus.ASSIGNED)
		self.assertEqual(response.data['progress']['active_task_id'], self.tasks[0].id)

	def test_stale_state_is_conflict(self):
		response = self.advance(self.tasks[0], {'expected_from_state': 'driver_arrived'})

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'precondition_failed')

	def test_out_of_order_task(self):
		self.tasks[0].state = TaskState.COMPLETED
		self.tasks[0].save()
		self.tasks[1].state = TaskState.STARTED
		self.tasks[1].save()
		self.ride.refresh_from_db()
		self.ride.status = RideStatus.IN_PROGRESS
		self.ride.save()

		response = self.advance(self.tasks[2], {'expected_from_state': 'pending'})

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['error'], 'out_of_order')

	def test_costs_breakdown(self):
		response = self.get(views.ride_costs, self.passenger, ride_id=self.ride.id)

		self.assertEqual(response.status_code, 200)
		costs = [task['cost'] for task in response.data['costs']['tasks']]
		self.assertEqual(costs, ['6.66', '6.66', '6.67'])


class PricingApiTests(ApiTestCase):
	def test_fare_quote_with_earnings(self):
		response = self.post(views.fare_quote, self.passenger, {
			'service_type': 'bulk',
			'params': {'distance_km': 5, 'number_of_trips': 4},
			'commission_rate': '0.10',
		})

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['fare']['total_fare'], '12.00')
		self.assertEqual(response.data['earnings']['driver_earnings'], '10.80')

	def test_fare_quote_unknown_service(self):
		response = self.post(views.fare_quote, self.passenger, {'service_type': 'zeppelin', 'params': {}})

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['field'], 'service_type')

	def test_distribute(self):
		response = self.post(views.distribute_cost, self.passenger, {'total': '19.99', 'count': 3})

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['costs'], ['6.66', '6.66', '6.67'])

	def test_distribute_rejects_zero_count(self):
		response = self.post(views.distribute_cost, self.passenger, {'total': '19.99', 'count': 0})

		self.assertEqual(response.status_code, 400)
		self.assertIn('count', response.data['errors'])


class HealthCheckTests(ApiTestCase):
	@patch('app_backend.views.redis.Redis')
	def test_all_services_healthy(self, mock_redis):
		request = self.factory.get('/health/')

		response = health_check(request)

		mock_redis.return_value.ping.assert_called_once()
		self.assertEqual(response.status_code, 200)
		self.assertEqual(set(response.data['services']), {'database', 'redis', 'channels', 'celery'})

	@patch('app_backend.views.redis.Redis')
	def test_redis_down_is_unhealthy(self, mock_redis):
		mock_redis.return_value.ping.side_effect = ConnectionError('refused')

		response = health_check(self.factory.get('/health/'))

		self.assertEqual(response.status_code, 503)
		self.assertTrue(response.data['services']['redis'].startswith('unhealthy'))
