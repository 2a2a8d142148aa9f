from rest_framework import serializers

STATUS_CHOICES = ['pending', 'committed', 'rejected', 'active', 'completed', 'cancelled']


class InvestmentSerializer(serializers.Serializer):
    """Commitment form sent to a startup's founder"""
    amount = serializers.DecimalField(
        max_digits=15,
        decimal_places=2,
        coerce_to_string=False,
        error_messages={'invalid': 'Please enter a valid amount', 'required': 'Please enter a valid amount'},
    )
    milestone = serializers.CharField(required=False, allow_blank=True, default='')
    message = serializers.CharField(required=False, allow_blank=True, default='')
    deadlineStartDate = serializers.DateField(required=False, allow_null=True)
    deadlineEndDate = serializers.DateField(required=False, allow_null=True)
    deadlineTime = serializers.RegexField(
        r'^([01]\d|2[0-3]):[0-5]\d$',
        required=False,
        allow_blank=True,
        default='',
        error_messages={'invalid': 'Deadline time must be in HH:MM format'},
    )

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError('Please enter a valid amount')
        return value

    def validate(self, attrs):
        start = attrs.get('deadlineStartDate')
        end = attrs.get('deadlineEndDate')
        if start and end and start > end:
            raise serializers.ValidationError('Deadline start date must be on or before the end date')
        return attrs

    def to_representation(self, instance):
        data = super().to_representation(instance)
        # JSON has no decimal type
        data['amount'] = float(data['amount'])
        return {key: value for key, value in data.items() if value is not None}


class StatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=STATUS_CHOICES)
