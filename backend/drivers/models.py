from django.db import models
from django.conf import settings

User = settings.AUTH_USER_MODEL


class DriverProfile(models.Model):
    """
    Driver availability and approval state.

    Approval is owned by the onboarding/KYC workflow; the dispatch core only
    reads it to decide whether a driver may bid.
    """
    STATUS_CHOICES = [
        ('available', 'Available'),
        ('busy', 'Busy'),
        ('offline', 'Offline'),
    ]

    APPROVAL_CHOICES = [
        ('pending', 'Pending Review'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
        ('suspended', 'Suspended'),
    ]

    VEHICLE_CHOICES = [
        ('motorcycle', 'Motorcycle'),
        ('sedan', 'Sedan'),
        ('mpv', 'MPV'),
        ('suv', 'SUV'),
        ('van', 'Van'),
        ('truck', 'Truck'),
    ]

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='driver_profile')

    vehicle_number = models.CharField(max_length=20, unique=True)
    vehicle_type = models.CharField(max_length=20, choices=VEHICLE_CHOICES, default='sedan')

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='offline')
    approval_status = models.CharField(max_length=20, choices=APPROVAL_CHOICES, default='pending')

    class Meta:
        db_table = 'driver_profiles'

    @property
    def is_approved(self) -> bool:
        return self.approval_status == 'approved'

    def __str__(self):
        return f"{self.user.username} - {self.vehicle_number}"
