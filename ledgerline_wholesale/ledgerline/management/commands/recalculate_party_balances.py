from decimal import Decimal

from django.core.management.base import BaseCommand, CommandError

from ledgerline.models import Party
from ledgerline.services.balance_service import balances_for, get_party_balances


class Command(BaseCommand):
    help = 'Rebuilds pending/current/advance balances for parties from their documents and payments'

    def add_arguments(self, parser):
        parser.add_argument('--party', type=int, help='Only this party id')
        parser.add_argument('--type', choices=[Party.CUSTOMER, Party.SUPPLIER], help='Only this party type')

    def handle(self, *args, **options):
        qs = Party.objects.filter(is_deleted=False)
        if options.get('party'):
            qs = qs.filter(pk=options['party'])
            if not qs.exists():
                raise CommandError(f"Party {options['party']} not found")
        if options.get('type'):
            qs = qs.filter(type=options['type'])

        self.stdout.write(f"Recalculating {qs.count()} parties...")
        changed = 0
        for party in qs.order_by('pk'):
            before = (party.pending_balance, party.current_balance, party.advance_balance)
            party = balances_for(party).recalculate_balance(party)
            if before != (party.pending_balance, party.current_balance, party.advance_balance):
                changed += 1
                self.stdout.write(
                    f"  {party.display_name}: pending {party.pending_balance}, "
                    f"current {party.current_balance}, advance {party.advance_balance}"
                )

        outstanding = open_documents = Decimal("0.00")
        for row in get_party_balances(qs):
            outstanding += row.net_balance or Decimal("0.00")
            open_documents += row.open_documents or Decimal("0.00")
        self.stdout.write(f"Net outstanding: {outstanding}")
        self.stdout.write(f"Unpaid on open documents: {open_documents}")
        self.stdout.write(self.style.SUCCESS(f'Successfully recalculated balances ({changed} changed).'))
