"""
Management command to assign a record store role to a user.

Usage:
    python manage.py grant_role doctor@example.com doctor
    python manage.py grant_role new@example.com patient --create --password s3cret

Idempotent: granting a role the user already holds is a no-op.
"""
from django.core.management.base import BaseCommand, CommandError
from django.contrib.auth import get_user_model
from apps.authz.models import Role, UserRole, RoleChoices


class Command(BaseCommand):
    help = 'Assign admin/doctor/patient role to a user (optionally creating the user)'

    def add_arguments(self, parser):
        parser.add_argument('email')
        parser.add_argument('role', choices=RoleChoices.values)
        parser.add_argument(
            '--create',
            action='store_true',
            help='Create the user if it does not exist'
        )
        parser.add_argument('--password', default=None)

    def handle(self, *args, **options):
        User = get_user_model()
        email = options['email']

        try:
            user = User.objects.get(email=email)
        except User.DoesNotExist:
            if not options['create']:
                raise CommandError(f'User "{email}" does not exist (use --create)')
            user = User.objects.create_user(
                email=email,
                password=options['password'],
                is_staff=options['role'] == RoleChoices.ADMIN
            )
            self.stdout.write(self.style.SUCCESS(f'Created user: {email}'))

        role, _ = Role.objects.get_or_create(name=options['role'])
        _, created = UserRole.objects.get_or_create(user=user, role=role)

        if created:
            self.stdout.write(self.style.SUCCESS(f'Assigned {role.name} role to {email}'))
        else:
            self.stdout.write(self.style.WARNING(f'User {email} already has {role.name} role'))
