"""Custom DRF permissions shared by the order and payment APIs."""

from rest_framework import permissions


def is_trusted_principal(user) -> bool:
    """Staff accounts may act on any customer's order."""
    return bool(user and user.is_authenticated and user.is_staff)


class IsStaff(permissions.BasePermission):
    """Allow access only to back-office (staff) users."""

    message = 'Only administrators can change order status.'

    def has_permission(self, request, view):
        return is_trusted_principal(request.user)


class IsOrderOwnerOrStaff(permissions.BasePermission):
    """Object-level access for orders: the owner, or any staff user."""

    def has_object_permission(self, request, view, obj):
        if is_trusted_principal(request.user):
            return True
        return getattr(obj, 'user_id', None) == request.user.id
