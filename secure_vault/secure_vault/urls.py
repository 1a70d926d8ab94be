"""
URL configuration for the secure_vault project.

The vault, profile and deletion endpoints answer with JSON; sign-up, login,
password reset and Google OAuth are served by django-allauth under /accounts/.
"""
from django.contrib import admin
from django.urls import path, re_path, include
from django.views.generic import RedirectView

from accounts import views as account_views

urlpatterns = [
    path('admin/', admin.site.urls),
    path('', include('core.urls')),
    path('vault/', include('vault.urls')),
    path('', include('django_prometheus.urls')),  # /metrics endpoint
    re_path(
        r'^accounts/password/reset/key/(?P<uidb36>[0-9A-Za-z]+)-(?P<key>.+)/$',
        account_views.HardenedPasswordResetFromKeyView.as_view(),
        name='account_reset_password_from_key',
    ),
    path('accounts/', include('allauth.urls')),
    path('profile/', include('accounts.urls')),

    path('login/', RedirectView.as_view(url='/accounts/login/', permanent=True)),
    path('register/', RedirectView.as_view(url='/accounts/signup/', permanent=True)),
    path('logout/', account_views.logout_page, name='logout'),
]
