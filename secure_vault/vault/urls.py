from django.urls import path
from . import views

urlpatterns = [
    path('dashboard/', views.dashboard, name='vault_dashboard'),
    path('passwords/', views.passwords, name='vault_passwords'),
    path('passwords/<str:entry_id>/reveal/', views.password_reveal, name='vault_password_reveal'),
    path('notes/', views.notes, name='vault_notes'),
    path('files/', views.files, name='vault_files'),
    path('files/<str:file_id>/download/', views.file_download, name='vault_file_download'),
]
