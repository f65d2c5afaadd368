"""Schema v2 - Track backfill sync passes.

Adds ``last_synced_at`` so the backfill monitor can record when a row was
last checked against the ledger.
"""

from .v1 import CARBON_CREDIT_COLUMNS, CARBON_CREDIT_INDEXES, UPDATED_AT_TRIGGER

schema = {
    'version': 2,
    'tables': [
        {
            'name': 'carbon_credits',
            'columns': CARBON_CREDIT_COLUMNS + [
                {'name': 'last_synced_at', 'type': 'TIMESTAMPTZ'},
            ],
            'checks': [
                "status IN ('active', 'listed', 'retired', 'archived')",
                'views >= 0',
                'favorites >= 0',
            ],
            'indexes': CARBON_CREDIT_INDEXES + [
                {'name': 'idx_carbon_credits_placeholder', 'columns': ['is_placeholder'],
                 'where': 'is_placeholder'},
            ],
        }
    ],
    'triggers': [UPDATED_AT_TRIGGER],
    'migrations': [
        'ALTER TABLE carbon_credits ADD COLUMN IF NOT EXISTS last_synced_at TIMESTAMPTZ',
        'CREATE INDEX IF NOT EXISTS idx_carbon_credits_placeholder '
        'ON carbon_credits (is_placeholder) WHERE is_placeholder',
    ],
}
