import logging
from decimal import Decimal

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from services import bidding, ride_management
from services.exceptions import (
    BidNotFoundError,
    Conflict,
    PermissionDenied,
    PreconditionFailed,
    RideNotFoundError,
    RideServiceError,
    TaskNotFoundError,
    ValidationError,
)
from services.pricing import compute_fare, cost_breakdown, distribute, driver_earnings
from .serializers import (
    BidCreateSerializer,
    BidSerializer,
    CompleteRideSerializer,
    DistributeRequestSerializer,
    ErrandTaskDetailSerializer,
    FareRequestSerializer,
    ReasonSerializer,
    RideCreateSerializer,
    RideSerializer,
    TaskAdvanceSerializer,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (Conflict, status.HTTP_409_CONFLICT),
    (PreconditionFailed, status.HTTP_409_CONFLICT),
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    (RideNotFoundError, status.HTTP_404_NOT_FOUND),
    (BidNotFoundError, status.HTTP_404_NOT_FOUND),
    (TaskNotFoundError, status.HTTP_404_NOT_FOUND),
)


def error_response(exc: RideServiceError) -> Response:
    """Translate a service error into the API error body."""
    code = next((code for error_class, code in ERROR_STATUS if isinstance(exc, error_class)),
                status.HTTP_400_BAD_REQUEST)
    body = {'success': False, 'error': exc.error_code, 'message': exc.message or str(exc)}
    field = exc.details.get('field')
    if field:
        body['field'] = field
    return Response(body, status=code)


def invalid_request(serializer) -> Response:
    return Response({
        'success': False,
        'error': 'validation_error',
        'message': 'Invalid request data',
        'errors': serializer.errors,
    }, status=status.HTTP_400_BAD_REQUEST)


def _reason(request) -> str:
    serializer = ReasonSerializer(data=request.data)
    if serializer.is_valid():
        return serializer.validated_data['reason']
    return ''


def _money_strings(value):
    """Decimals as strings so amounts keep their cents in JSON."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {key: _money_strings(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_money_strings(item) for item in value]
    return value


# ==================== Rides ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_ride(request):
    """Book a ride (any service type); it waits in pending for driver bids"""
    serializer = RideCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)

    try:
        result = ride_management.create_ride(passenger=request.user, **serializer.validated_data)
    except RideServiceError as exc:
        return error_response(exc)

    return Response({
        'success': True,
        'message': result.message,
        'ride': RideSerializer(result.ride).data,
    }, status=status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def ride_detail(request, ride_id):
    """Ride with its tasks, task history and progress"""
    try:
        ride = ride_management.get_ride_for_user(ride_id, request.user)
    except RideServiceError as exc:
        return error_response(exc)
    return Response({'success': True, 'ride': RideSerializer(ride).data})


def _transition(request, operation, ride_id, **kwargs):
    try:
        result = operation(ride_id, request.user, **kwargs)
    except RideServiceError as exc:
        return error_response(exc)
    body = {
        'success': True,
        'changed': result.changed,
        'message': result.message,
        'ride': RideSerializer(result.ride).data,
    }
    if result.extra:
        body.update(result.extra)
    return Response(body)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def start_ride(request, ride_id):
    return _transition(request, ride_management.start_ride, ride_id)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def complete_ride(request, ride_id):
    """Driver completes an in-progress ride"""
    serializer = CompleteRideSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    return _transition(
        request, ride_management.complete_ride, ride_id,
        final_cost=serializer.validated_data.get('final_cost'),
    )


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def cancel_ride(request, ride_id):
    """Passenger, assigned driver or operator cancels a ride before completion"""
    return _transition(request, ride_management.cancel_ride, ride_id, reason=_reason(request))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def dispute_ride(request, ride_id):
    return _transition(request, ride_management.dispute_ride, ride_id, reason=_reason(request))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def flag_ride(request, ride_id):
    return _transition(request, ride_management.flag_ride, ride_id, reason=_reason(request))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def ride_costs(request, ride_id):
    """Per-task cost breakdown and reconciliation status"""
    try:
        ride = ride_management.get_ride_for_user(ride_id, request.user)
    except RideServiceError as exc:
        return error_response(exc)

    breakdown = cost_breakdown(ride)
    if breakdown is None:
        breakdown = {
            'ride_id': ride.id,
            'total_cost': ride.final_cost if ride.final_cost is not None else ride.estimated_cost,
            'occurrences': ride.occurrences,
            'tasks': [],
        }
    return Response({'success': True, 'costs': _money_strings(breakdown)})


# ==================== Bids ====================

@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def ride_bids(request, ride_id):
    """GET: bids on a ride, lowest first. POST: driver places a bid."""
    if request.method == 'GET':
        try:
            ride = ride_management.get_ride_for_user(ride_id, request.user)
        except RideServiceError as exc:
            return error_response(exc)
        bids = bidding.list_bids(ride.id, status=request.query_params.get('status'))
        # Drivers only see their own bids
        if not (request.user.is_operator or request.user.id == ride.passenger_id):
            bids = [bid for bid in bids if bid.driver_id == request.user.id]
        return Response({
            'success': True,
            'count': len(bids),
            'bids': BidSerializer(bids, many=True).data,
        })

    serializer = BidCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    try:
        result = bidding.submit_bid(ride_id, request.user, serializer.validated_data.get('amount'))
    except RideServiceError as exc:
        return error_response(exc)

    return Response({
        'success': True,
        'message': result.message,
        'bid': BidSerializer(result.bid).data,
        'ride_status': result.ride.status,
    }, status=status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def accept_bid(request, ride_id, bid_id):
    """Passenger accepts one bid; a lost race returns 409 already_assigned"""
    try:
        result = bidding.accept_bid(ride_id, bid_id, request.user)
    except RideServiceError as exc:
        if isinstance(exc, Conflict):
            logger.info("Bid %s lost the acceptance race on ride %s", bid_id, ride_id)
        return error_response(exc)

    result.ride.refresh_from_db()
    return Response({
        'success': True,
        'changed': result.changed,
        'message': result.message,
        'bid': BidSerializer(result.bid).data,
        'ride': RideSerializer(result.ride).data,
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def decline_bid(request, ride_id, bid_id):
    try:
        result = bidding.decline_bid(ride_id, bid_id, request.user, reason=_reason(request))
    except RideServiceError as exc:
        return error_response(exc)
    return Response({
        'success': True,
        'changed': result.changed,
        'message': result.message,
        'bid': BidSerializer(result.bid).data,
        'ride_status': result.ride.status,
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def withdraw_bid(request, bid_id):
    try:
        result = bidding.withdraw_bid(bid_id, request.user, reason=_reason(request))
    except RideServiceError as exc:
        return error_response(exc)
    return Response({
        'success': True,
        'changed': result.changed,
        'message': result.message,
        'bid': BidSerializer(result.bid).data,
        'ride_status': result.ride.status,
    })


# ==================== Errand tasks ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def advance_task(request, ride_id, task_id):
    """Assigned driver moves the active errand task one step forward"""
    serializer = TaskAdvanceSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    try:
        result = ride_management.advance_task(
            ride_id,
            task_id,
            serializer.validated_data['expected_from_state'],
            request.user,
            to_state=serializer.validated_data.get('to_state') or None,
        )
    except RideServiceError as exc:
        return error_response(exc)

    result.ride.refresh_from_db()
    return Response({
        'success': True,
        'changed': result.changed,
        'message': result.message,
        'task': ErrandTaskDetailSerializer(result.task).data,
        'ride_status': result.ride.status,
        'progress': ride_management.ride_progress(result.ride),
    })


# ==================== Pricing ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def fare_quote(request):
    """Fare breakdown for a service type; falls back to default pricing when config is unavailable"""
    serializer = FareRequestSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    data = serializer.validated_data
    try:
        breakdown = compute_fare(data['service_type'], data['params'])
        body = {'success': True, 'fare': breakdown.as_dict()}
        if 'commission_rate' in data:
            earnings = driver_earnings(breakdown.total_fare, data['commission_rate'])
            body['earnings'] = {key: str(value) for key, value in earnings.items()}
    except RideServiceError as exc:
        return error_response(exc)
    return Response(body)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def distribute_cost(request):
    """Split a total into per-task costs that sum exactly to the total"""
    serializer = DistributeRequestSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    data = serializer.validated_data
    try:
        costs = distribute(data['total'], data['count'])
    except RideServiceError as exc:
        return error_response(exc)
    return Response({
        'success': True,
        'total': str(data['total']),
        'costs': [str(cost) for cost in costs],
    })
