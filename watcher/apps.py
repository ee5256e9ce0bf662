from django.apps import AppConfig


class WatcherConfig(AppConfig):
    name = "watcher"
    verbose_name = "NFTMarket event watcher"
