from django.urls import path

from . import views

urlpatterns = [
    path('webhook/', views.processor_webhook, name='payment_processor_webhook'),
    path('direct-debit/charge/', views.direct_debit_charge, name='direct_debit_charge'),
    path('direct-debit/setup/', views.direct_debit_setup, name='direct_debit_setup'),
]
