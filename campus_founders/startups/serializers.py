from rest_framework import serializers

from campus_founders.core.normalizers import drop_missing

CATEGORY_CHOICES = [
    'fintech',
    'healthtech',
    'edtech',
    'agritech',
    'e-commerce',
    'saas',
    'ai/ml',
    'iot',
    'blockchain',
    'climatetech',
    'proptech',
    'foodtech',
    'traveltech',
    'gaming',
    'social media',
    'media & entertainment',
    'logistics',
    'hr tech',
    'legaltech',
    'other',
]

STAGE_CHOICES = ['idea', 'prototype', 'mvp', 'beta', 'launched', 'growth']


class StartupSerializer(serializers.Serializer):
    """
    Create/update form for the founder's own startup. Only the fields
    checked here are declared; any other field is sent as given.
    """
    name = serializers.CharField(max_length=200)
    tagline = serializers.CharField(required=False, allow_blank=True)
    description = serializers.CharField()
    category = serializers.ChoiceField(choices=CATEGORY_CHOICES)
    stage = serializers.ChoiceField(choices=STAGE_CHOICES, default='idea')
    logo = serializers.CharField(required=False, allow_blank=True)
    websiteUrl = serializers.URLField(required=False, allow_blank=True)
    demoUrl = serializers.URLField(required=False, allow_blank=True)

    def to_internal_value(self, data):
        if isinstance(data, dict) and isinstance(data.get('category'), str):
            data = {**data, 'category': data['category'].lower()}
        return super().to_internal_value(data)


class ReviewSerializer(serializers.Serializer):
    rating = serializers.IntegerField(
        min_value=1,
        max_value=5,
        error_messages={
            'min_value': 'Rating must be between 1 and 5',
            'max_value': 'Rating must be between 1 and 5',
        },
    )
    comment = serializers.CharField(error_messages={'blank': 'Rating and comment are required'})


class MetricsSerializer(serializers.Serializer):
    """Only the metrics provided are sent"""
    revenue = serializers.JSONField(required=False)
    users = serializers.JSONField(required=False)
    roadmap = serializers.JSONField(required=False)

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError('Provide revenue, users or roadmap')
        return attrs


def normalize_startups(startups):
    """Drop startups that no longer exist; owners that were deleted become None"""
    if not isinstance(startups, list):
        return startups
    kept = []
    for startup in drop_missing(startups):
        owner = startup.get('owner')
        if owner is not None and not isinstance(owner, (dict, str)):
            owner = None
        kept.append({**startup, 'owner': owner})
    return kept


def normalize_startup_detail(payload):
    if not isinstance(payload, dict):
        return payload
    data = dict(payload)
    startup = data.get('startup')
    if isinstance(startup, dict) and isinstance(startup.get('upvotes'), list):
        data['startup'] = {**startup, 'upvotes': [u for u in startup['upvotes'] if u]}
    if isinstance(data.get('reviews'), list):
        data['reviews'] = drop_missing(data['reviews'], 'user')
    return data


def normalize_search_results(payload):
    if isinstance(payload, dict) and isinstance(payload.get('results'), list):
        return {**payload, 'results': normalize_startups(payload['results'])}
    return payload
