from django.db import migrations, models

import inventory.models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Place',
            fields=[
                ('id', models.CharField(default=inventory.models.new_document_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ('owner_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('name', models.TextField(blank=True, default='')),
                ('type', models.CharField(choices=[('home', 'Home'), ('office', 'Office'), ('storage', 'Storage'), ('other', 'Other')], default='home', max_length=16)),
                ('created_at', models.DateTimeField(auto_now_add=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True, null=True)),
            ],
            options={
                'db_table': 'inventory_place',
            },
        ),
        migrations.CreateModel(
            name='PlaceKey',
            fields=[
                ('place_id', models.CharField(max_length=64, primary_key=True, serialize=False)),
                ('key', models.TextField()),
                ('created_at', models.DateTimeField(auto_now_add=True, null=True)),
            ],
            options={
                'db_table': 'inventory_placekey',
            },
        ),
        migrations.CreateModel(
            name='Container',
            fields=[
                ('id', models.CharField(default=inventory.models.new_document_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ('place_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('name', models.TextField(blank=True, default='')),
                ('qr_code_id', models.CharField(blank=True, default='', max_length=64)),
                ('group_id', models.CharField(blank=True, default='', max_length=64)),
                ('created_at', models.DateTimeField(auto_now_add=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True, null=True)),
            ],
            options={
                'db_table': 'inventory_container',
            },
        ),
        migrations.CreateModel(
            name='Item',
            fields=[
                ('id', models.CharField(default=inventory.models.new_document_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ('container_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('place_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('name', models.TextField(blank=True, default='')),
                ('description', models.TextField(blank=True, null=True)),
                ('tags', models.JSONField(blank=True, default=list)),
                ('group_id', models.CharField(blank=True, default='', max_length=64)),
                ('created_at', models.DateTimeField(auto_now_add=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True, null=True)),
            ],
            options={
                'db_table': 'inventory_item',
            },
        ),
        migrations.CreateModel(
            name='Group',
            fields=[
                ('id', models.CharField(default=inventory.models.new_document_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ('name', models.TextField(blank=True, default='')),
                ('type', models.CharField(choices=[('place', 'Place'), ('container', 'Container'), ('item', 'Item')], max_length=16)),
                ('parent_id', models.CharField(blank=True, max_length=64, null=True)),
                ('place_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('created_at', models.DateTimeField(auto_now_add=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True, null=True)),
            ],
            options={
                'db_table': 'inventory_group',
            },
        ),
        migrations.CreateModel(
            name='Activity',
            fields=[
                ('id', models.CharField(default=inventory.models.new_document_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ('place_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('user_id', models.CharField(blank=True, default='', max_length=64)),
                ('action', models.CharField(max_length=32)),
                ('entity_type', models.CharField(max_length=32)),
                ('entity_id', models.CharField(blank=True, default='', max_length=64)),
                ('entity_name', models.TextField(blank=True, default='')),
                ('metadata', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True, null=True)),
            ],
            options={
                'db_table': 'inventory_activity',
                'ordering': ['-created_at'],
            },
        ),
    ]
