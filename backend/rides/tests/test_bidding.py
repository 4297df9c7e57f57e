import threading
from decimal import Decimal
from unittest.mock import patch

from django.db import IntegrityError, connection, transaction
from django.test import TestCase, TransactionTestCase

from rides.models import Bid, BidStatus, RideStatus, TaskState
from services.bidding import (
	ALREADY_ASSIGNED_MESSAGE,
	accept_bid,
	decline_bid,
	list_bids,
	submit_bid,
	withdraw_bid,
)
from services.exceptions import Conflict, PermissionDenied, PreconditionFailed, ValidationError
from .helpers import make_driver, make_errand_ride, make_passenger, make_ride


class BidSubmissionTests(TestCase):
	def setUp(self):
		self.passenger = make_passenger()
		self.driver = make_driver('driver_one', 'WB-1001')
		self.ride = make_ride(self.passenger)

	def test_first_bid_moves_pending_ride_to_offered(self):
		result = submit_bid(self.ride.id, self.driver, '12.00')

		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, RideStatus.OFFERED)
		self.assertEqual(result.bid.amount, Decimal('12.00'))
		self.assertEqual(result.bid.status, BidStatus.PENDING)

	def test_bid_amount_validation_messages(self):
		cases = [
			('', 'Please enter a bid amount'),
			('abc', 'Please enter a valid amount'),
			('12.345', 'Bid amount can have at most two decimal places'),
			('0.50', 'Minimum bid is $1.00'),
			('10000', 'Maximum bid is $9999.99'),
		]
		for amount, message in cases:
			with self.subTest(amount=amount):
				with self.assertRaisesMessage(ValidationError, message):
					submit_bid(self.ride.id, self.driver, amount)
		self.assertFalse(Bid.objects.exists())

	def test_unapproved_driver_cannot_bid(self):
		newcomer = make_driver('driver_new', 'WB-2001', approval_status='pending')

		with self.assertRaises(PermissionDenied):
			submit_bid(self.ride.id, newcomer, '10.00')

	def test_passenger_cannot_bid(self):
		with self.assertRaises(PermissionDenied):
			submit_bid(self.ride.id, self.passenger, '10.00')

	def test_second_pending_bid_from_same_driver_rejected(self):
		submit_bid(self.ride.id, self.driver, '12.00')

		with self.assertRaisesMessage(ValidationError, 'already have a pending bid'):
			submit_bid(self.ride.id, self.driver, '11.00')

	def test_cannot_bid_on_assigned_ride(self):
		other = make_driver('driver_two', 'WB-1002')
		bid = submit_bid(self.ride.id, other, '9.00').bid
		accept_bid(self.ride.id, bid.id, self.passenger)

		with self.assertRaisesMessage(ValidationError, 'no longer accepting bids'):
			submit_bid(self.ride.id, self.driver, '8.00')

	def test_withdrawing_last_bid_returns_ride_to_pending(self):
		bid = submit_bid(self.ride.id, self.driver, '12.00').bid

		result = withdraw_bid(bid.id, self.driver, reason='Too far')

		self.ride.refresh_from_db()
		self.assertEqual(result.bid.status, BidStatus.WITHDRAWN)
		self.assertEqual(self.ride.status, RideStatus.PENDING)

		again = withdraw_bid(bid.id, self.driver)
		self.assertFalse(again.changed)

	def test_declining_one_of_two_bids_keeps_ride_offered(self):
		other = make_driver('driver_two', 'WB-1002')
		first = submit_bid(self.ride.id, self.driver, '12.00').bid
		submit_bid(self.ride.id, other, '10.00')

		decline_bid(self.ride.id, first.id, self.passenger, reason='Too expensive')

		self.ride.refresh_from_db()
		first.refresh_from_db()
		self.assertEqual(first.status, BidStatus.REJECTED)
		self.assertEqual(self.ride.status, RideStatus.OFFERED)

	def test_list_bids_orders_by_amount(self):
		other = make_driver('driver_two', 'WB-1002')
		submit_bid(self.ride.id, self.driver, '12.00')
		submit_bid(self.ride.id, other, '10.00')

		amounts = [bid.amount for bid in list_bids(self.ride.id)]
		self.assertEqual(amounts, [Decimal('10.00'), Decimal('12.00')])


class BidAcceptanceTests(TestCase):
	def setUp(self):
		self.passenger = make_passenger()
		self.driver_a = make_driver('driver_a', 'WB-1001')
		self.driver_b = make_driver('driver_b', 'WB-1002')
		self.ride = make_ride(self.passenger)
		self.bid_a = submit_bid(self.ride.id, self.driver_a, '12.00').bid
		self.bid_b = submit_bid(self.ride.id, self.driver_b, '10.00').bid

	def test_losing_acceptance_gets_conflict(self):
		accept_bid(self.ride.id, self.bid_b.id, self.passenger)

		with self.assertRaises(Conflict) as ctx:
			accept_bid(self.ride.id, self.bid_a.id, self.passenger)
		self.assertEqual(ctx.exception.message, ALREADY_ASSIGNED_MESSAGE)

		self.ride.refresh_from_db()
		self.bid_a.refresh_from_db()
		self.bid_b.refresh_from_db()
		self.assertEqual(self.ride.status, RideStatus.ASSIGNED)
		self.assertEqual(self.ride.driver, self.driver_b)
		self.assertEqual(self.ride.estimated_cost, Decimal('10.00'))
		self.assertEqual(self.bid_b.status, BidStatus.ACCEPTED)
		self.assertEqual(self.bid_a.status, BidStatus.REJECTED)
		self.assertEqual(self.ride.bids.filter(status=BidStatus.ACCEPTED).count(), 1)

	def test_winning_driver_marked_busy(self):
		accept_bid(self.ride.id, self.bid_a.id, self.passenger)

		self.driver_a.driver_profile.refresh_from_db()
		self.assertEqual(self.driver_a.driver_profile.status, 'busy')

	def test_accepting_same_bid_twice_is_a_noop(self):
		accept_bid(self.ride.id, self.bid_b.id, self.passenger)

		result = accept_bid(self.ride.id, self.bid_b.id, self.passenger)

		self.assertFalse(result.changed)

	def test_series_acceptance_leaves_driver_available(self):
		series = make_ride(
			self.passenger,
			is_series=True,
			scheduled_dates=['2026-11-02', '2026-11-03'],
		)
		bid = submit_bid(series.id, self.driver_a, '30.00').bid

		accept_bid(series.id, bid.id, self.passenger)

		self.driver_a.driver_profile.refresh_from_db()
		self.assertEqual(self.driver_a.driver_profile.status, 'available')
		accept_bid(self.ride.id, self.bid_a.id, self.passenger)
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.driver, self.driver_a)

	def test_only_ride_owner_can_accept(self):
		stranger = make_passenger('stranger')

		with self.assertRaises(PermissionDenied):
			accept_bid(self.ride.id, self.bid_a.id, stranger)

	def test_busy_driver_cannot_be_accepted(self):
		self.driver_a.driver_profile.status = 'busy'
		self.driver_a.driver_profile.save()

		with self.assertRaises(PreconditionFailed):
			accept_bid(self.ride.id, self.bid_a.id, self.passenger)

		self.ride.refresh_from_db()
		self.assertIsNone(self.ride.driver_id)

	def test_withdrawn_bid_acceptance_rolls_back_ride_claim(self):
		withdraw_bid(self.bid_a.id, self.driver_a)

		with self.captureOnCommitCallbacks() as callbacks:
			with self.assertRaises(PreconditionFailed):
				accept_bid(self.ride.id, self.bid_a.id, self.passenger)

		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, RideStatus.OFFERED)
		self.assertIsNone(self.ride.driver_id)
		self.assertEqual(callbacks, [])

	@patch('realtime.propagation.deliver')
	def test_acceptance_publishes_after_commit(self, mock_deliver):
		with self.captureOnCommitCallbacks(execute=True):
			accept_bid(self.ride.id, self.bid_b.id, self.passenger)

		events = [call.args[0] for call in mock_deliver.call_args_list]
		ride_events = [event for event in events if event.entity_type == 'rides']
		bid_statuses = {event.entity_id: event.snapshot['status'] for event in events if event.entity_type == 'bids'}

		self.assertEqual(ride_events[0].snapshot['status'], RideStatus.ASSIGNED)
		self.assertEqual(ride_events[0].snapshot['driver_id'], self.driver_b.id)
		self.assertEqual(ride_events[0].previous['status'], RideStatus.OFFERED)
		self.assertEqual(bid_statuses, {self.bid_b.id: 'accepted', self.bid_a.id: 'rejected'})

	def test_second_accepted_bid_violates_constraint(self):
		accept_bid(self.ride.id, self.bid_b.id, self.passenger)

		with self.assertRaises(IntegrityError), transaction.atomic():
			Bid.objects.filter(pk=self.bid_a.id).update(status=BidStatus.ACCEPTED)


@patch('realtime.propagation.deliver')
class ConcurrentAcceptanceTests(TransactionTestCase):
	def setUp(self):
		self.passenger = make_passenger()
		self.driver_a = make_driver('driver_a', 'WB-1001')
		self.driver_b = make_driver('driver_b', 'WB-1002')
		self.ride = make_ride(self.passenger)
		self.bid_a = submit_bid(self.ride.id, self.driver_a, '12.00').bid
		self.bid_b = submit_bid(self.ride.id, self.driver_b, '10.00').bid

	def test_simultaneous_acceptances_assign_one_driver(self, mock_deliver):
		barrier = threading.Barrier(2)
		outcomes = {}

		def accept(bid):
			try:
				barrier.wait(timeout=5)
				outcomes[bid.id] = accept_bid(self.ride.id, bid.id, self.passenger)
			except Exception as exc:
				outcomes[bid.id] = exc
			finally:
				connection.close()

		threads = [threading.Thread(target=accept, args=(bid,)) for bid in (self.bid_a, self.bid_b)]
		for thread in threads:
			thread.start()
		for thread in threads:
			thread.join(timeout=30)

		winners = [bid_id for bid_id, outcome in outcomes.items() if not isinstance(outcome, Exception)]
		losers = [outcome for outcome in outcomes.values() if isinstance(outcome, Exception)]
		self.assertEqual(len(winners), 1)
		self.assertEqual(len(losers), 1)
		self.assertIsInstance(losers[0], Conflict)

		winning_bid = Bid.objects.get(pk=winners[0])
		losing_bid = Bid.objects.exclude(pk=winning_bid.id).get(ride=self.ride)
		self.ride.refresh_from_db()
		self.assertEqual(winning_bid.status, BidStatus.ACCEPTED)
		self.assertEqual(losing_bid.status, BidStatus.REJECTED)
		self.assertEqual(self.ride.status, RideStatus.ASSIGNED)
		self.assertEqual(self.ride.driver_id, winning_bid.driver_id)
		self.assertEqual(self.ride.estimated_cost, winning_bid.amount)


class ErrandBidAcceptanceTests(TestCase):
	def setUp(self):
		self.passenger = make_passenger()
		self.driver = make_driver('driver_one', 'WB-1001')
		self.ride = make_errand_ride(self.passenger, task_count=3)

	def test_acceptance_splits_fare_and_activates_first_task(self):
		bid = submit_bid(self.ride.id, self.driver, '19.99').bid

		accept_bid(self.ride.id, bid.id, self.passenger)

		tasks = list(self.ride.tasks.order_by('order'))
		self.assertEqual([task.cost for task in tasks], [Decimal('6.66'), Decimal('6.66'), Decimal('6.67')])
		self.assertEqual([task.state for task in tasks], [TaskState.ACTIVATED, TaskState.PENDING, TaskState.PENDING])
		self.assertEqual(tasks[0].history.count(), 1)
