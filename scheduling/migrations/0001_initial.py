import django.core.validators
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Timeslot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("start_time", models.DateTimeField(verbose_name="Start time")),
                ("duration_minutes", models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(15), django.core.validators.MaxValueValidator(480)], verbose_name="Duration (minutes)")),
                ("end_time", models.DateTimeField(editable=False, verbose_name="End time")),
                ("status", models.CharField(choices=[("available", "Available"), ("booked", "Booked"), ("completed", "Completed")], default="available", max_length=20, verbose_name="Status")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("client", models.ForeignKey(blank=True, null=True, on_delete=models.SET_NULL, related_name="booked_timeslots", to=settings.AUTH_USER_MODEL)),
                ("provider", models.ForeignKey(on_delete=models.CASCADE, related_name="timeslots", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["start_time"],
                "permissions": [("book_timeslot", "Can book timeslot"), ("complete_timeslot", "Can complete timeslot")],
                "indexes": [
                    models.Index(fields=["provider", "start_time"], name="timeslot_provider_start_idx"),
                    models.Index(fields=["status", "start_time"], name="timeslot_status_start_idx"),
                    models.Index(fields=["status", "end_time"], name="timeslot_status_end_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(("client__isnull", True), ("status", "available"))
                            | models.Q(("client__isnull", False), ("status", "booked"))
                            | models.Q(("status", "completed"))
                        ),
                        name="timeslot_status_matches_client",
                    ),
                ],
            },
        ),
    ]
