from django.apps import AppConfig


class StartupsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'campus_founders.startups'
