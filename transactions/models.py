from django.db import models
from django.utils import timezone


class User(models.Model):
    name = models.CharField(max_length=255)
    email = models.EmailField(unique=True)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'users'
        ordering = ['name']

    def __str__(self):
        return f"{self.name} <{self.email}>"


class Account(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='accounts')
    name = models.CharField(max_length=255)
    iban = models.CharField(max_length=34, blank=True, default='')
    currency = models.CharField(max_length=3, default='EUR')

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'accounts'
        ordering = ['name']

    def __str__(self):
        return self.name


class Category(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='categories')
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    color = models.CharField(max_length=7, blank=True, default='')
    parent = models.ForeignKey(
        'self',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='children'
    )

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'categories'
        verbose_name_plural = 'categories'
        ordering = ['name']
        unique_together = ['user', 'name']

    def __str__(self):
        return self.name


class Merchant(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='merchants')
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'merchants'
        ordering = ['name']
        unique_together = ['user', 'name']

    def __str__(self):
        return self.name


class Tag(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='tags')
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True, default='')
    color = models.CharField(max_length=7, blank=True, default='')

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'tags'
        ordering = ['name']
        unique_together = ['user', 'name']

    def __str__(self):
        return self.name


class Transaction(models.Model):
    TYPE_TRANSFER = 'TRANSFER'
    TYPE_CARD_PAYMENT = 'CARD_PAYMENT'
    TYPE_EXCHANGE = 'EXCHANGE'
    TYPE_PAYMENT = 'PAYMENT'
    TYPE_WITHDRAWAL = 'WITHDRAWAL'
    TYPE_DEPOSIT = 'DEPOSIT'

    TYPE_CHOICES = [
        (TYPE_TRANSFER, 'Transfer'),
        (TYPE_CARD_PAYMENT, 'Card payment'),
        (TYPE_EXCHANGE, 'Exchange'),
        (TYPE_PAYMENT, 'Payment'),
        (TYPE_WITHDRAWAL, 'Withdrawal'),
        (TYPE_DEPOSIT, 'Deposit'),
    ]

    account = models.ForeignKey(Account, on_delete=models.CASCADE, related_name='transactions')
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default='EUR')
    booked_date = models.DateField()
    processed_date = models.DateField(null=True, blank=True)

    description = models.TextField(blank=True, null=True)
    partner = models.CharField(max_length=255, blank=True, null=True)
    type = models.CharField(max_length=20, choices=TYPE_CHOICES, default=TYPE_PAYMENT)
    note = models.TextField(blank=True, null=True)
    recipient_note = models.TextField(blank=True, null=True)
    place = models.CharField(max_length=255, blank=True, null=True)
    target_iban = models.CharField(max_length=34, blank=True, null=True)
    source_iban = models.CharField(max_length=34, blank=True, null=True)

    category = models.ForeignKey(
        Category,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='transactions'
    )
    merchant = models.ForeignKey(
        Merchant,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='transactions'
    )
    tags = models.ManyToManyField(Tag, through='TransactionTag', related_name='transactions', blank=True)

    is_reconciled = models.BooleanField(default=False)
    reconciled_at = models.DateTimeField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'transactions'
        ordering = ['-booked_date', '-id']

    def __str__(self):
        return f"Transaction {self.id} - {self.amount} {self.currency}"

    @property
    def owner_id(self):
        return self.account.user_id if self.account_id else None

    @classmethod
    def valid_types(cls):
        return [value for value, _label in cls.TYPE_CHOICES]


class TransactionTag(models.Model):
    transaction = models.ForeignKey(Transaction, on_delete=models.CASCADE)
    tag = models.ForeignKey(Tag, on_delete=models.CASCADE)

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'transaction_tags'
        unique_together = ['transaction', 'tag']

    def __str__(self):
        return f"Tag {self.tag_id} on Transaction {self.transaction_id}"
