"""Maintenance commands for the circulation database.

    python -m circulation_desk.cli initdb
    python -m circulation_desk.cli create-admin "Ava Admin" admin@example.com
    python -m circulation_desk.cli seed
    python -m circulation_desk.cli sweep --actor 1
"""
import argparse

from circulation_desk.core.config import settings
from circulation_desk.core.database import SessionLocal, init_db
from circulation_desk.core.logging import setup_logging
from circulation_desk.models.models import MembershipType, Patron, Title
from circulation_desk.services.circulation import CirculationService
from circulation_desk.services.patrons import PatronService

logger = setup_logging(settings.log_level)


def seed(db) -> None:
    # quick idempotent seed
    if db.query(Patron).count() == 0:
        patrons = PatronService(db)
        admin = patrons.bootstrap_admin('Ava Admin', 'admin@example.com')
        for name, email in [('Alice Reader', 'alice@example.com'), ('Bob Reader', 'bob@example.com')]:
            member = patrons.register(name, email, membership_type=MembershipType.STUDENT)
            patrons.approve(admin, member.id)
    if db.query(Title).count() == 0:
        db.add_all([
            Title(title='Dune', author='Frank Herbert', isbn='9780441172719',
                  total_copies=2, available_copies=2),
            Title(title='Designing Data-Intensive Applications', author='Martin Kleppmann',
                  isbn='9781449373320', total_copies=1, available_copies=1),
        ])
        db.commit()
    logger.info('Seeded sample data')


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Circulation desk utilities')
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('initdb', help='Create tables')
    sub.add_parser('seed', help='Seed sample data')
    admin = sub.add_parser('create-admin', help='Create an active superadmin')
    admin.add_argument('full_name')
    admin.add_argument('email')
    sweep = sub.add_parser('sweep', help='Mark overdue loans and assess fines')
    sweep.add_argument('--actor', type=int, required=True, help='id of the staff patron running the sweep')
    args = parser.parse_args(argv)

    init_db()
    db = SessionLocal()
    try:
        if args.command == 'seed':
            seed(db)
        elif args.command == 'create-admin':
            patron = PatronService(db).bootstrap_admin(args.full_name, args.email)
            print(f'Created superadmin id={patron.id}')
        elif args.command == 'sweep':
            report = CirculationService(db).sweep_overdue(db.get(Patron, args.actor))
            print(f'{report.loans_marked_overdue} loans marked overdue, '
                  f'{report.fines_assessed} fines assessed, {report.total_unpaid} unpaid')
    finally:
        db.close()
    print('Done')
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
