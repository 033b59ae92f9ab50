import uuid

from django.db import models
from django_prometheus.models import ExportModelOperationsMixin


def new_document_id():
    return uuid.uuid4().hex


# Records are stored as documents: references between them
# are plain id strings, so a dangling container_id is representable and the
# encryption backfill has to cope with it.

class Place(ExportModelOperationsMixin('place'), models.Model):
    TYPE_CHOICES = [
        ('home', 'Home'),
        ('office', 'Office'),
        ('storage', 'Storage'),
        ('other', 'Other'),
    ]

    id = models.CharField(primary_key=True, max_length=64, default=new_document_id, editable=False)
    owner_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    name = models.TextField(blank=True, default='')  # encrypted
    type = models.CharField(max_length=16, choices=TYPE_CHOICES, default='home')
    created_at = models.DateTimeField(null=True, auto_now_add=True)
    updated_at = models.DateTimeField(null=True, auto_now=True)

    class Meta:
        db_table = 'inventory_place'

    def __str__(self):
        return f"Place {self.id}"


class PlaceKey(models.Model):
    """Data encryption key of a place, stored as base64 of the raw AES key."""

    # Primary key on the place id makes creation conditional: a second
    # creator hits IntegrityError instead of overwriting the first key.
    place_id = models.CharField(primary_key=True, max_length=64)
    key = models.TextField()
    created_at = models.DateTimeField(null=True, auto_now_add=True)

    class Meta:
        db_table = 'inventory_placekey'

    def __str__(self):
        return f"PlaceKey for {self.place_id}"


class Container(ExportModelOperationsMixin('container'), models.Model):
    id = models.CharField(primary_key=True, max_length=64, default=new_document_id, editable=False)
    place_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    name = models.TextField(blank=True, default='')  # encrypted
    qr_code_id = models.CharField(max_length=64, blank=True, default='')
    group_id = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(null=True, auto_now_add=True)
    updated_at = models.DateTimeField(null=True, auto_now=True)

    class Meta:
        db_table = 'inventory_container'

    def __str__(self):
        return f"Container {self.id}"


class Item(ExportModelOperationsMixin('item'), models.Model):
    id = models.CharField(primary_key=True, max_length=64, default=new_document_id, editable=False)
    container_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    # Denormalized from the container; missing on items created before it existed.
    place_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    name = models.TextField(blank=True, default='')  # encrypted
    description = models.TextField(null=True, blank=True)  # encrypted
    tags = models.JSONField(default=list, blank=True)  # encrypted element-wise
    group_id = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(null=True, auto_now_add=True)
    updated_at = models.DateTimeField(null=True, auto_now=True)

    class Meta:
        db_table = 'inventory_item'

    def __str__(self):
        return f"Item {self.id}"


class Group(ExportModelOperationsMixin('group'), models.Model):
    TYPE_CHOICES = [
        ('place', 'Place'),
        ('container', 'Container'),
        ('item', 'Item'),
    ]

    id = models.CharField(primary_key=True, max_length=64, default=new_document_id, editable=False)
    name = models.TextField(blank=True, default='')  # encrypted
    type = models.CharField(max_length=16, choices=TYPE_CHOICES)
    # Place id for container groups, container id for item groups.
    parent_id = models.CharField(max_length=64, null=True, blank=True)
    place_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    created_at = models.DateTimeField(null=True, auto_now_add=True)
    updated_at = models.DateTimeField(null=True, auto_now=True)

    class Meta:
        db_table = 'inventory_group'

    def __str__(self):
        return f"Group {self.id} ({self.type})"


class Activity(ExportModelOperationsMixin('activity'), models.Model):
    id = models.CharField(primary_key=True, max_length=64, default=new_document_id, editable=False)
    place_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    user_id = models.CharField(max_length=64, blank=True, default='')
    action = models.CharField(max_length=32)
    entity_type = models.CharField(max_length=32)
    entity_id = models.CharField(max_length=64, blank=True, default='')
    entity_name = models.TextField(blank=True, default='')  # encrypted
    metadata = models.JSONField(null=True, blank=True)  # selected keys encrypted
    created_at = models.DateTimeField(null=True, auto_now_add=True)

    class Meta:
        db_table = 'inventory_activity'
        ordering = ['-created_at']

    def __str__(self):
        return f"Activity {self.id}: {self.action} {self.entity_type}"
