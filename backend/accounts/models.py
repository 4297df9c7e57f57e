from django.db import models
from django.contrib.auth.models import AbstractUser


class User(AbstractUser):
    """Platform user. Identity and sessions are managed elsewhere; rides only read the role."""
    ROLE_CHOICES = [
        ('passenger', 'Passenger'),
        ('corporate', 'Corporate Client'),
        ('driver', 'Driver'),
        ('operator', 'Operator'),
    ]

    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default='passenger')
    phone_number = models.CharField(max_length=15, blank=True)
    completed_rides = models.IntegerField(default=0)

    class Meta:
        db_table = 'users'

    @property
    def is_driver(self) -> bool:
        return self.role == 'driver'

    @property
    def is_operator(self) -> bool:
        return self.role == 'operator' or self.is_staff

    @property
    def can_book(self) -> bool:
        return self.role in ('passenger', 'corporate')

    def __str__(self):
        return f"{self.username} ({self.get_role_display()})"
