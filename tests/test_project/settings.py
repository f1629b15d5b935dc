SECRET_KEY = "relation-builder-tests"

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "bookstore",
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.AutoField"
USE_TZ = True

RELATION_BUILDER = {
    "BATCH_SIZE": 1000,
}
