from decimal import Decimal

from accounts.models import User
from drivers.models import DriverProfile
from rides.models import ErrandTask, Ride, ServiceType


def make_passenger(username='passenger', role='passenger'):
	return User.objects.create_user(
		username=username,
		password='pass1234',
		role=role,
		phone_number='9000000000'
	)


def make_driver(username, vehicle_number, approval_status='approved', status='available'):
	user = User.objects.create_user(
		username=username,
		password='driver1234',
		role='driver',
		phone_number='9000000001'
	)
	DriverProfile.objects.create(
		user=user,
		vehicle_number=vehicle_number,
		status=status,
		approval_status=approval_status
	)
	return user


def make_operator(username='operator'):
	return User.objects.create_user(username=username, password='op1234', role='operator')


def make_ride(passenger, **fields):
	values = {
		'service_type': ServiceType.TAXI,
		'pickup_address': 'Connaught Place',
		'dropoff_address': 'India Gate',
		'estimated_cost': Decimal('15.00'),
	}
	values.update(fields)
	return Ride.objects.create(passenger=passenger, **values)


def make_errand_ride(passenger, task_count=3, estimated_cost=Decimal('19.99'), **fields):
	ride = make_ride(
		passenger,
		service_type=ServiceType.ERRANDS,
		pickup_address='',
		dropoff_address='',
		estimated_cost=estimated_cost,
		**fields
	)
	for order in range(task_count):
		ErrandTask.objects.create(
			ride=ride,
			order=order,
			title='Errand %d' % (order + 1),
			pickup_address='Shop %d' % (order + 1),
			dropoff_address='Home %d' % (order + 1)
		)
	return ride
