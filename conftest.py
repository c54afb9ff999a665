import os, sys

ROOT = os.path.abspath(os.path.dirname(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Тестовые значения для Settings, если не заданы
os.environ.setdefault('APP_ENV', 'test')
os.environ.setdefault('LOG_LEVEL', 'WARNING')
os.environ.setdefault('RING_TIMEOUT_SEC', '0')
