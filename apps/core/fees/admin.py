from django.contrib import admin

from .models import LedgerPayment, LedgerRecord, LedgerStudent, MonthCharge, PaymentAllocation


class ReadOnlyFinancialAdmin(admin.ModelAdmin):
    def has_delete_permission(self, request, obj=None):
        return False


class LedgerStudentInline(admin.TabularInline):
    model = LedgerStudent
    extra = 0
    can_delete = False
    readonly_fields = ('student', 'name', 'admission_fee', 'admission_paid', 'subtotal')


class LedgerPaymentInline(admin.TabularInline):
    model = LedgerPayment
    extra = 0
    can_delete = False
    readonly_fields = ('amount', 'method', 'paid_on', 'confirmation', 'processor_payment_intent_id', 'reference')


@admin.register(LedgerRecord)
class LedgerRecordAdmin(ReadOnlyFinancialAdmin):
    list_display = ('id', 'family', 'payment_type', 'billing_period', 'status', 'expected_total', 'paid_total', 'remaining')
    list_filter = ('payment_type', 'status', 'billing_year', 'billing_month')
    search_fields = ('family__name', 'family__email')
    readonly_fields = ('expected_total', 'paid_total', 'remaining', 'version', 'created_at', 'updated_at')
    inlines = [LedgerStudentInline, LedgerPaymentInline]


@admin.register(MonthCharge)
class MonthChargeAdmin(ReadOnlyFinancialAdmin):
    list_display = ('student', 'year', 'month', 'discounted_fee', 'paid', 'settled_by_admission', 'is_void')
    list_filter = ('year', 'month', 'is_void', 'settled_by_admission')
    search_fields = ('student__name',)


@admin.register(LedgerPayment)
class LedgerPaymentAdmin(ReadOnlyFinancialAdmin):
    list_display = ('id', 'record', 'amount', 'method', 'paid_on', 'confirmation', 'processor_payment_intent_id')
    list_filter = ('method', 'confirmation')
    search_fields = ('processor_payment_intent_id', 'reference', 'record__family__name')


@admin.register(PaymentAllocation)
class PaymentAllocationAdmin(ReadOnlyFinancialAdmin):
    list_display = ('payment', 'line', 'component', 'amount')
    list_filter = ('component',)
