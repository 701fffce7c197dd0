import logging

from django.apps import apps
from django.test.runner import DiscoverRunner


class InstalledAppsOnlyDiscoverRunner(DiscoverRunner):
    """Discover tests in the project's own apps and keep service logs at WARNING while they run."""

    project_prefix = 'apps.'

    def setup_test_environment(self, **kwargs):
        super().setup_test_environment(**kwargs)
        self._app_log_level = logging.getLogger('apps').level
        logging.getLogger('apps').setLevel(logging.WARNING)

    def teardown_test_environment(self, **kwargs):
        logging.getLogger('apps').setLevel(self._app_log_level)
        super().teardown_test_environment(**kwargs)

    def build_suite(self, test_labels=None, **kwargs):
        if not test_labels:
            test_labels = [
                app_config.name
                for app_config in apps.get_app_configs()
                if app_config.name.startswith(self.project_prefix)
            ]
        return super().build_suite(test_labels=test_labels, **kwargs)
