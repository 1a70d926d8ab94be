from django.urls import path
from . import views

urlpatterns = [
    path('', views.profile_view, name='profile'),
    path('one-time-code/', views.one_time_code_view, name='one_time_code'),
    path('delete/', views.delete_account_view, name='delete_account'),
]
