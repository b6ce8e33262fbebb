import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Organization",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(help_text="Display name", max_length=200)),
                ("email", models.EmailField(blank=True, help_text="Billing contact email", max_length=254)),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("suspended", "Suspended")],
                        db_index=True,
                        default="active",
                        max_length=20,
                    ),
                ),
                ("suspension_reason", models.TextField(blank=True)),
                ("suspended_at", models.DateTimeField(blank=True, null=True)),
                (
                    "customer_code",
                    models.CharField(
                        blank=True, db_index=True, help_text="Payment provider customer identifier", max_length=100
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "suspended_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="suspended_organizations",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Organization",
                "verbose_name_plural": "Organizations",
                "db_table": "organizations",
                "ordering": ("name",),
                "indexes": [models.Index(fields=["status", "created_at"], name="org_status_created_idx")],
            },
        ),
    ]
