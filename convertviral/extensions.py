import atexit


def init_extensions(app, runtime) -> None:
    """Start the cache sweep and register shutdown hooks once per process."""
    if app is None:
        return
    state = app.extensions.setdefault('convertviral', {})
    state['cache'] = runtime.cache
    state['storage'] = runtime.storage
    if state.get('started'):
        return
    runtime.cache.start()
    atexit.register(shutdown_extensions, runtime)
    state['started'] = True


def shutdown_extensions(runtime) -> None:
    runtime.cache.stop()
    runtime.storage.cancel_scheduled_deletions()
