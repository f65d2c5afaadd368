"""Schema v1 - Off-chain carbon credit records.

One row per minted token, keyed by the token id (base58 mint address).
Listing and retirement columns are shadow flags kept for querying; the
ledger stays authoritative for both.
"""

CARBON_CREDIT_COLUMNS = [
    {'name': 'token_id', 'type': 'TEXT', 'primary_key': True},
    {'name': 'owner', 'type': 'TEXT', 'nullable': False},
    {'name': 'name', 'type': 'TEXT', 'nullable': False, 'default': "''"},
    {'name': 'symbol', 'type': 'TEXT', 'nullable': False, 'default': "''"},
    {'name': 'project_name', 'type': 'TEXT', 'nullable': False, 'default': "''"},
    {'name': 'country', 'type': 'TEXT'},
    {'name': 'region', 'type': 'TEXT'},
    {'name': 'vintage_year', 'type': 'INT4'},
    {'name': 'quantity_tonnes', 'type': 'DECIMAL'},
    {'name': 'verification_standard', 'type': 'TEXT'},
    {'name': 'certification_body', 'type': 'TEXT'},
    {'name': 'verification_date', 'type': 'DATE'},
    {'name': 'project_type', 'type': 'TEXT'},
    {'name': 'description', 'type': 'TEXT'},
    {'name': 'image_uri', 'type': 'TEXT'},
    {'name': 'metadata_uri', 'type': 'TEXT'},
    {'name': 'is_listed', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
    {'name': 'listing_price', 'type': 'INT8'},
    {'name': 'is_retired', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
    {'name': 'retired_by', 'type': 'TEXT'},
    {'name': 'retired_at', 'type': 'TIMESTAMPTZ'},
    {'name': 'beneficiary', 'type': 'TEXT'},
    {'name': 'views', 'type': 'INT8', 'nullable': False, 'default': '0'},
    {'name': 'favorites', 'type': 'INT8', 'nullable': False, 'default': '0'},
    {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'active'"},
    {'name': 'is_placeholder', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
    {'name': 'mint_signature', 'type': 'TEXT'},
    {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
    {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
]

CARBON_CREDIT_INDEXES = [
    {'name': 'idx_carbon_credits_owner', 'columns': ['owner']},
    {'name': 'idx_carbon_credits_project_type', 'columns': ['project_type']},
    {'name': 'idx_carbon_credits_listed', 'columns': ['is_listed'], 'where': 'is_listed'},
    {'name': 'idx_carbon_credits_status', 'columns': ['status']},
]

UPDATED_AT_TRIGGER = {
    'name': 'trg_carbon_credits_updated_at',
    'table': 'carbon_credits',
    'timing': 'BEFORE',
    'event': 'UPDATE',
    'function_name': 'set_carbon_credits_updated_at',
    'function_body': '''
        BEGIN
            NEW.updated_at = now();
            RETURN NEW;
        END;
    ''',
}

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'carbon_credits',
            'columns': CARBON_CREDIT_COLUMNS,
            'checks': [
                "status IN ('active', 'listed', 'retired', 'archived')",
                'views >= 0',
                'favorites >= 0',
            ],
            'indexes': CARBON_CREDIT_INDEXES,
        }
    ],
    'triggers': [UPDATED_AT_TRIGGER],
    'migrations': [],
}
