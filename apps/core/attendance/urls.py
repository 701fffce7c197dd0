from django.urls import path

from .views import attendance_mark

urlpatterns = [
    path('mark/', attendance_mark, name='attendance_mark'),
]
