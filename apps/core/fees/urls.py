from django.urls import path

from .views import (
    outstanding_months,
    payment_create,
    payment_top_up,
    record_cancel,
    record_detail,
    record_list,
    record_verify,
)

urlpatterns = [
    path('payments/', payment_create, name='fee_payment_create'),
    path('payments/<int:pk>/top-up/', payment_top_up, name='fee_payment_top_up'),
    path('payments/<int:pk>/verify/', record_verify, name='fee_record_verify'),
    path('payments/<int:pk>/cancel/', record_cancel, name='fee_record_cancel'),
    path('records/', record_list, name='fee_record_list'),
    path('records/<int:pk>/', record_detail, name='fee_record_detail'),
    path('unpaid/', outstanding_months, name='fee_unpaid_months'),
]
