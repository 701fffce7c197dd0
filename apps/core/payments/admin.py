from django.contrib import admin

from .models import DirectDebitMandate


@admin.register(DirectDebitMandate)
class DirectDebitMandateAdmin(admin.ModelAdmin):
    list_display = ('family', 'status', 'mandate_status', 'processor_mandate_id', 'active_date')
    list_filter = ('status', 'mandate_status')
    search_fields = ('family__name', 'family__email', 'processor_customer_id', 'processor_mandate_id')
    readonly_fields = (
        'processor_customer_id',
        'processor_mandate_id',
        'processor_payment_method_id',
        'status',
        'mandate_status',
        'setup_date',
        'active_date',
        'success_email_sent_at',
        'failure_reason',
    )
