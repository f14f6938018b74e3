from django.dispatch import Signal

# Sent by the send_notification action with ``rule_id``, ``transaction`` and
# ``message`` keyword arguments. Receivers must not rely on being called in a
# dry run; they are not.
rule_notification = Signal()
