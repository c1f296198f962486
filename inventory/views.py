import uuid

from django.shortcuts import get_object_or_404
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.exceptions import error_response, stock_error_response
from common.permissions import RoleCapabilityPermission
from core.models import Branch
from core.views import scoped_queryset_for_user
from inventory import alerts, services
from inventory.exceptions import NoStockRecord
from inventory.models import RawItem, StockAlert
from inventory.serializers import (
    AlertMarkReadSerializer,
    DeductionResultSerializer,
    MovementResultSerializer,
    OrderDeductionSerializer,
    RawItemSerializer,
    StockAlertSerializer,
    StockInSerializer,
    StockLevelSerializer,
    StockMovementSerializer,
    StockOutSerializer,
)

DEFAULT_HISTORY_LIMIT = 100
MAX_HISTORY_LIMIT = 1000


def resolve_branch(request, requested_branch_id=None):
    """Branch the request acts on: the user's own, or any branch for superusers."""
    branch_id = getattr(request.user, "branch_id", None)
    if requested_branch_id and (request.user.is_superuser or not branch_id):
        branch_id = requested_branch_id

    if not branch_id:
        raise ValidationError("No branch is available for this request.")
    try:
        branch_id = uuid.UUID(str(branch_id))
    except ValueError:
        raise ValidationError({"branch_id": "Must be a valid UUID."})
    return get_object_or_404(Branch, id=branch_id, is_active=True)


class StockMutationMixin:
    audit_action = None

    def _audit(self, branch, result, event_id=None):
        if result.replayed:
            return
        create_audit_log_from_request(
            self.request,
            action=self.audit_action,
            entity="stock_movement",
            entity_id=result.movement.id,
            before_snapshot={"quantity": result.movement.previous_quantity},
            after_snapshot=StockMovementSerializer(result.movement).data,
            event_id=event_id,
            branch=branch,
        )

    def _respond(self, result):
        return Response(
            MovementResultSerializer(result).data,
            status=status.HTTP_200_OK if result.replayed else status.HTTP_201_CREATED,
        )


class StockInView(StockMutationMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "stock.receive"}
    audit_action = "stock.in"

    def post(self, request):
        serializer = StockInSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        branch = resolve_branch(request, data.get("branch_id"))

        result = services.record_stock_in(
            branch.id,
            data["raw_item_id"],
            data["quantity"],
            data["unit"],
            supplier_ref=data.get("supplier_ref"),
            movement_type=data["movement_type"],
            notes=data.get("notes", ""),
            actor=request.user,
            idempotency_key=data.get("event_id"),
            deadline=data.get("deadline"),
        )
        self._audit(branch, result, data.get("event_id"))
        return self._respond(result)


class StockOutView(StockMutationMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "stock.adjust"}
    audit_action = "stock.out"

    def post(self, request):
        serializer = StockOutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        branch = resolve_branch(request, data.get("branch_id"))

        result = services.record_stock_out(
            branch.id,
            data["raw_item_id"],
            data["quantity"],
            data["unit"],
            movement_type=data["movement_type"],
            notes=data.get("notes", ""),
            actor=request.user,
            reference_type=data.get("reference_type"),
            reference_id=data.get("reference_id") or None,
            idempotency_key=data.get("event_id"),
            deadline=data.get("deadline"),
        )
        self._audit(branch, result, data.get("event_id"))
        return self._respond(result)


class OrderDeductionView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "stock.deduct"}

    def post(self, request):
        serializer = OrderDeductionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        branch = resolve_branch(request, data.get("branch_id"))

        result = services.deduct_from_order(
            branch.id,
            data["order_id"],
            data["items"],
            actor=request.user,
            deadline=data.get("deadline"),
        )
        payload = DeductionResultSerializer(result).data

        applied = [outcome for outcome in result.succeeded if not outcome.replayed]
        if applied:
            create_audit_log_from_request(
                request,
                action="stock.order_deduction",
                entity="order",
                after_snapshot=payload,
                event_id=f"order:{result.order_id}",
                branch=branch,
            )
        return Response(payload, status=status.HTTP_200_OK if result.ok else status.HTTP_207_MULTI_STATUS)


class StockLevelListView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "inventory.view"}

    def get(self, request):
        branch = resolve_branch(request, request.query_params.get("branch_id"))
        levels = services.list_stock_levels(branch.id)
        return Response(StockLevelSerializer(levels, many=True).data)


class StockLevelDetailView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "inventory.view"}

    def get(self, request, raw_item_id):
        branch = resolve_branch(request, request.query_params.get("branch_id"))
        try:
            level = services.get_stock_level(branch.id, raw_item_id)
        except NoStockRecord as exc:
            return stock_error_response(exc, status.HTTP_404_NOT_FOUND)
        return Response(StockLevelSerializer(level).data)


class StockMovementListView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "inventory.view"}

    def get(self, request):
        branch = resolve_branch(request, request.query_params.get("branch_id"))
        raw_limit = request.query_params.get("limit")
        if raw_limit in (None, ""):
            limit = DEFAULT_HISTORY_LIMIT
        else:
            try:
                limit = int(raw_limit)
            except (TypeError, ValueError):
                raise ValidationError({"limit": "Must be an integer."})
            if limit < 1 or limit > MAX_HISTORY_LIMIT:
                raise ValidationError({"limit": f"Must be between 1 and {MAX_HISTORY_LIMIT}."})

        movements = services.get_movement_history(
            branch.id,
            raw_item_id=request.query_params.get("raw_item_id") or None,
            limit=limit,
        )
        return Response(StockMovementSerializer(movements, many=True).data)


class RawItemViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = RawItem.objects.all()
    serializer_class = RawItemSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}

    def get_queryset(self):
        qs = super().get_queryset().order_by("code")
        category = self.request.query_params.get("category")
        is_active = self.request.query_params.get("is_active")
        code = self.request.query_params.get("code")

        if category:
            qs = qs.filter(category=category)
        if is_active is not None:
            qs = qs.filter(is_active=is_active.strip().lower() in {"1", "true", "yes"})
        if code:
            qs = qs.filter(code=code.strip())
        return qs


class StockAlertViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockAlert.objects.select_related("raw_item")
    serializer_class = StockAlertSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "low_stock": "inventory.view",
        "mark_read": "inventory.view",
        "resolve": "alert.resolve",
    }

    def get_queryset(self):
        return scoped_queryset_for_user(super().get_queryset(), self.request.user).order_by("-created_at")

    def list(self, request, *args, **kwargs):
        branch = resolve_branch(request, request.query_params.get("branch_id"))
        page = self.paginate_queryset(alerts.get_active_alerts(branch.id))
        return self.get_paginated_response(self.get_serializer(page, many=True).data)

    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        branch = resolve_branch(request, request.query_params.get("branch_id"))
        return Response(StockLevelSerializer(services.get_low_stock_levels(branch.id), many=True).data)

    @action(detail=False, methods=["post"], url_path="mark-read")
    def mark_read(self, request):
        serializer = AlertMarkReadSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        branch = resolve_branch(request, serializer.validated_data.get("branch_id"))
        updated = alerts.mark_read(serializer.validated_data["alert_ids"], branch.id)
        return Response({"updated": [str(alert_id) for alert_id in updated]})

    @action(detail=True, methods=["post"], url_path="resolve")
    def resolve(self, request, pk=None):
        alert = self.get_object()
        if not alerts.resolve_alert(alert.id, request.user):
            return error_response(
                code="alert_already_resolved",
                message="Alert is already resolved.",
                status_code=status.HTTP_409_CONFLICT,
            )
        alert.refresh_from_db()
        create_audit_log_from_request(
            request,
            action="stock_alert.resolve",
            entity="stock_alert",
            entity_id=alert.id,
            before_snapshot={"is_resolved": False},
            after_snapshot=self.get_serializer(alert).data,
            branch=alert.branch,
        )
        return Response(self.get_serializer(alert).data)
