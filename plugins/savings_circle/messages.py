class Messages:
    PAYMENT_REMINDER = (
        "Reminder: your payment for {month_name} in the circle '{circle_name}' "
        "is still open ({slot_count} slot(s), {amount} due). "
        "Please send your proof of payment."
    )
    ADMIN_PAYMENT_NOTIFICATION = (
        "New payment from {member_name} ({phone}) for {month_name} "
        "in '{circle_name}': {amount}"
    )
    ADMIN_PAYMENT_WITHOUT_CLAIM = (
        "New payment from {member_name} ({phone}) for {month_name} "
        "in '{circle_name}', but they hold no slots in that month"
    )
    NOT_PROVIDED = "Not provided"
