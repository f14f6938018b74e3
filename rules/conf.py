from django.conf import settings


DEFAULTS = {
    'EXECUTION_LOGGING': True,
    'BATCH_SIZE': 100,
    'TEST_RULE_MAX_TRANSACTIONS': 10,
    'STATISTICS_DAYS': 30,
}


def engine_setting(name):
    """Read a key of the ``RULE_ENGINE`` setting, falling back to the default."""
    return getattr(settings, 'RULE_ENGINE', {}).get(name, DEFAULTS[name])
