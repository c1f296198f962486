from django.db import models


class OutboxMessage(models.Model):
    id = models.BigAutoField(primary_key=True)
    branch_id = models.UUIDField()
    entity = models.CharField(max_length=64)
    entity_id = models.CharField(max_length=64)
    op = models.CharField(max_length=16)
    payload = models.JSONField()
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True, default="")
    dispatched_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch_id", "id"], name="outbox_branch_id_idx"),
            models.Index(fields=["entity", "id"], name="outbox_entity_id_idx"),
            models.Index(fields=["dispatched_at", "id"], name="outbox_pending_idx"),
        ]

    @property
    def is_pending(self):
        return self.dispatched_at is None
