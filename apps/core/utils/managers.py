from django.db import models


class FamilyScopedQuerySet(models.QuerySet):
    def for_family(self, family):
        return self.filter(family=family)


class FamilyScopedManager(models.Manager):
    def get_queryset(self):
        return FamilyScopedQuerySet(self.model, using=self._db)

    def for_family(self, family):
        return self.get_queryset().for_family(family)
