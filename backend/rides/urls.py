from django.urls import path
from . import views

app_name = 'rides'

urlpatterns = [
    # Rides
    path('rides/', views.create_ride, name='create-ride'),
    path('rides/<int:ride_id>/', views.ride_detail, name='ride-detail'),
    path('rides/<int:ride_id>/costs/', views.ride_costs, name='ride-costs'),

    # Ride transitions
    path('rides/<int:ride_id>/start/', views.start_ride, name='start-ride'),
    path('rides/<int:ride_id>/complete/', views.complete_ride, name='complete-ride'),
    path('rides/<int:ride_id>/cancel/', views.cancel_ride, name='cancel-ride'),
    path('rides/<int:ride_id>/dispute/', views.dispute_ride, name='dispute-ride'),
    path('rides/<int:ride_id>/flag/', views.flag_ride, name='flag-ride'),

    # Bids
    path('rides/<int:ride_id>/bids/', views.ride_bids, name='ride-bids'),
    path('rides/<int:ride_id>/bids/<int:bid_id>/accept/', views.accept_bid, name='accept-bid'),
    path('rides/<int:ride_id>/bids/<int:bid_id>/decline/', views.decline_bid, name='decline-bid'),
    path('bids/<int:bid_id>/withdraw/', views.withdraw_bid, name='withdraw-bid'),

    # Errand tasks
    path('rides/<int:ride_id>/tasks/<int:task_id>/advance/', views.advance_task, name='advance-task'),

    # Pricing
    path('pricing/fare/', views.fare_quote, name='fare-quote'),
    path('pricing/distribute/', views.distribute_cost, name='distribute-cost'),
]
