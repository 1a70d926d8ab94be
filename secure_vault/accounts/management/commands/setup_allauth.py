from django.core.management.base import BaseCommand
from django.contrib.sites.models import Site
from accounts.models import CustomUser, UserProfile
from accounts.one_time_code import OneTimeCodeService
from allauth.account.models import EmailAddress


class Command(BaseCommand):
    help = 'Create the default site and backfill allauth email rows and verification codes'

    def add_arguments(self, parser):
        parser.add_argument('--domain', default='localhost:8000')
        parser.add_argument('--name', default='Secure Vault')

    def handle(self, *args, **options):
        site, created = Site.objects.update_or_create(
            pk=1,
            defaults={'domain': options['domain'], 'name': options['name']},
        )
        self.stdout.write(self.style.SUCCESS(
            f"{'Created' if created else 'Updated'} site {site.domain}"
        ))

        emails_added = 0
        profiles_added = 0
        with_code = set(
            UserProfile.objects.exclude(one_time_code='').values_list('user_id', flat=True)
        )
        for user in CustomUser.objects.all():
            _, created = EmailAddress.objects.get_or_create(
                user=user,
                email=user.email,
                defaults={'verified': True, 'primary': True},
            )
            emails_added += int(created)

            if user.pk not in with_code:
                OneTimeCodeService.ensure_profile(user)
                profiles_added += 1

        self.stdout.write(self.style.SUCCESS(
            f'Added {emails_added} email address row(s) and {profiles_added} verification code(s)'
        ))
