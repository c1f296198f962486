from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="OutboxMessage",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("branch_id", models.UUIDField()),
                ("entity", models.CharField(max_length=64)),
                ("entity_id", models.CharField(max_length=64)),
                ("op", models.CharField(max_length=16)),
                ("payload", models.JSONField()),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True, default="")),
                ("dispatched_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["branch_id", "id"], name="outbox_branch_id_idx"),
                    models.Index(fields=["entity", "id"], name="outbox_entity_id_idx"),
                    models.Index(fields=["dispatched_at", "id"], name="outbox_pending_idx"),
                ],
            },
        ),
    ]
