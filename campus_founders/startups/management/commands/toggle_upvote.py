"""
Toggle the logged-in user's upvote on a startup.

Usage:
    python manage.py toggle_upvote <startup_id>
"""
from django.core.management.base import BaseCommand, CommandError

from campus_founders.api import CampusFoundersAPI
from campus_founders.core.exceptions import CampusFoundersError
from campus_founders.startups.upvotes import has_upvoted, upvote_count


class Command(BaseCommand):
    help = "Toggle your upvote on a startup"

    def add_arguments(self, parser):
        parser.add_argument('startup_id', help='Startup id')

    def handle(self, *args, **options):
        api = CampusFoundersAPI()
        startup_id = options['startup_id']
        try:
            user_id = api.social.current_user_id()
            if not user_id:
                raise CommandError('Please login to upvote')
            api.startups.get_startup(startup_id)
            result = api.startups.toggle_upvote(startup_id, user_id)
            if not result.ok:
                raise CommandError(result.message or str(result.error))
            detail = api.startups.get_startup(startup_id) or {}
        except CampusFoundersError as e:
            raise CommandError(str(e)) from e
        finally:
            api.close()

        startup = detail.get('startup') or {}
        state = 'Upvoted' if has_upvoted(startup, user_id) else 'Upvote removed'
        self.stdout.write(self.style.SUCCESS(
            f"{state}: {startup.get('name', startup_id)} ({upvote_count(startup)} upvotes)"
        ))
