"""
List pending friend requests, optionally accepting one.

Usage:
    python manage.py friend_requests
    python manage.py friend_requests --accept <request_id>
"""
from django.core.management.base import BaseCommand, CommandError

from campus_founders.api import CampusFoundersAPI
from campus_founders.core.exceptions import CampusFoundersError
from campus_founders.core.normalizers import normalize_id


class Command(BaseCommand):
    help = 'List incoming and outgoing friend requests'

    def add_arguments(self, parser):
        parser.add_argument('--accept', metavar='REQUEST_ID', help='Accept an incoming request')

    def handle(self, *args, **options):
        api = CampusFoundersAPI()
        try:
            if not api.social.get_auth_user():
                raise CommandError('Not logged in')
            friend_requests = api.social.get_friend_requests()
            outgoing = api.social.get_outgoing_friend_requests()

            if options['accept']:
                result = api.social.accept_friend_request(options['accept'])
                if not result.ok:
                    raise CommandError(result.message or str(result.error))
                self.stdout.write(self.style.SUCCESS(f"Accepted request {options['accept']}"))
                friend_requests = api.social.get_friend_requests()
        except CampusFoundersError as e:
            raise CommandError(str(e)) from e
        finally:
            api.close()

        self.stdout.write("Incoming:")
        for req in friend_requests.get('incomingReqs') or []:
            sender = req['sender']
            self.stdout.write(f"  {normalize_id(req)}  {sender.get('fullName') or sender.get('username')}")
        self.stdout.write("Outgoing:")
        for req in outgoing:
            recipient = req.get('recipient') or {}
            name = recipient.get('fullName') or recipient.get('username') or normalize_id(recipient)
            self.stdout.write(f"  {name} (pending)")
