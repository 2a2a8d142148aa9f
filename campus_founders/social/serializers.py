from rest_framework import serializers

from campus_founders.core.normalizers import drop_missing
from campus_founders.core.serializers import PassthroughSerializer

ROLE_CHOICES = ['student', 'investor', 'normal']


class UserProfileSerializer(PassthroughSerializer):
    """Maps the backend's legacy profile fields onto the names the client uses"""
    interestedDomain = serializers.CharField(source='nativeLanguage', default='', allow_null=True)
    currentFocus = serializers.CharField(source='nativeLanguage', default='', allow_null=True)
    skillTrack = serializers.CharField(source='learningLanguage', default='', allow_null=True)
    role = serializers.CharField(default='normal')
    isPremium = serializers.BooleanField(default=False)

    def to_representation(self, instance):
        data = super().to_representation(instance)
        for field in ('interestedDomain', 'currentFocus', 'skillTrack'):
            data[field] = data[field] or ''
        data['role'] = data['role'] or 'normal'
        data['isPremium'] = bool(data['isPremium'])
        return data


def normalize_user(user):
    if not isinstance(user, dict):
        return user
    return UserProfileSerializer(user).data


def normalize_users(users):
    """Well-formed users only, each with client field names"""
    if not isinstance(users, list):
        return users
    return [normalize_user(user) for user in drop_missing(users)]


def normalize_auth_payload(payload):
    if isinstance(payload, dict) and isinstance(payload.get('user'), dict):
        return {**payload, 'user': normalize_user(payload['user'])}
    return payload


def normalize_friend_requests(payload):
    """Drop requests whose sender/recipient was deleted and map the nested users"""
    if not isinstance(payload, dict):
        return payload
    data = dict(payload)
    if isinstance(data.get('incomingReqs'), list):
        data['incomingReqs'] = [
            {**req, 'sender': normalize_user(req['sender'])}
            for req in drop_missing(data['incomingReqs'], 'sender')
        ]
    if isinstance(data.get('acceptedReqs'), list):
        data['acceptedReqs'] = [
            {**req, 'recipient': normalize_user(req['recipient'])}
            for req in drop_missing(data['acceptedReqs'], 'recipient')
        ]
    return data


def normalize_outgoing_requests(requests):
    if not isinstance(requests, list):
        return requests
    return [
        req for req in requests
        if isinstance(req, dict) and req.get('recipient') is not None
    ]


class SignupSerializer(serializers.Serializer):
    email = serializers.EmailField()
    password = serializers.CharField(min_length=6)
    username = serializers.CharField()
    fullName = serializers.CharField(required=False, allow_blank=True)
    role = serializers.ChoiceField(choices=ROLE_CHOICES, required=False)


class LoginSerializer(serializers.Serializer):
    email = serializers.EmailField()
    password = serializers.CharField()


class OnboardingSerializer(serializers.Serializer):
    """
    Onboarding form. ``interestedDomain`` is sent to the backend under the
    legacy ``nativeLanguage``/``learningLanguage`` fields.
    """
    bio = serializers.CharField()
    interestedDomain = serializers.CharField()
    location = serializers.CharField()
    profilePic = serializers.CharField()
    fullName = serializers.CharField(required=False)
    role = serializers.ChoiceField(choices=ROLE_CHOICES, required=False)

    def validate_profilePic(self, value):
        if not (value.startswith('data:image/') or value.startswith('http')):
            raise serializers.ValidationError(
                "Invalid profile picture format. Must be a data URL or HTTP URL"
            )
        return value

    def to_representation(self, instance):
        data = super().to_representation(instance)
        data['nativeLanguage'] = data['interestedDomain']
        data['learningLanguage'] = data['interestedDomain'] or ''
        return data
