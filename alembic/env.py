# alembic/env.py

import sys
from os.path import abspath, dirname
# Make the project importable when alembic runs from the repo root
sys.path.insert(0, abspath(dirname(dirname(__file__))))

from logging.config import fileConfig
from sqlalchemy import engine_from_config
from sqlalchemy.pool import NullPool
from alembic import context

# Settings know how to read .env
from settlement.core.config import settings
from settlement.db.session import Base
# Every model has to be imported so its table lands in the metadata
from settlement.models.user import User
from settlement.models.order import Order, TopUp
from settlement.models.promo import PromoCode
from settlement.models.referral import ReferralAttribution
from settlement.models.vcash import VCashAccount, VCashTransaction
from settlement.models.affiliate import Affiliate, AffiliateCommission, AffiliatePayout

target_metadata = Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = settings.DATABASE_URL
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    # The URL always comes from settings, never from alembic.ini
    connectable = engine_from_config(
        {"sqlalchemy.url": settings.DATABASE_URL},
        prefix="sqlalchemy.",
        poolclass=NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, target_metadata=target_metadata
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
