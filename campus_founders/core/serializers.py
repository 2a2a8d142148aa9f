"""
Validation boundary for outgoing payloads.

Forms are validated with DRF serializers before any request is sent; a
rejected form raises the client's ValidationError and never reaches the
network.
"""
from rest_framework import serializers

from .exceptions import ValidationError


def first_error_message(errors):
    """Flatten DRF's nested error structure into one readable message"""
    if isinstance(errors, dict):
        for field, value in errors.items():
            message = first_error_message(value)
            if field == 'non_field_errors':
                return message
            return f"{field}: {message}"
    if isinstance(errors, list) and errors:
        return first_error_message(errors[0])
    return str(errors)


def validate_payload(serializer_class, data, **kwargs):
    """Return the serializer's output for ``data`` or raise ValidationError"""
    serializer = serializer_class(data=data, **kwargs)
    if not serializer.is_valid():
        raise ValidationError(
            first_error_message(serializer.errors),
            code='CLIENT_VALIDATION',
            payload={'errors': serializer.errors},
        )
    return dict(serializer.data)


class PassthroughSerializer(serializers.Serializer):
    """
    Output serializer for backend dicts: declared fields are mapped, every
    other key is passed through untouched.
    """

    def to_representation(self, instance):
        data = dict(instance)
        data.update(super().to_representation(instance))
        return data
