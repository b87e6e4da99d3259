import multiprocessing

# gunicorn -c gunicorn.conf.py "dealqr:create_app()"
wsgi_app = "dealqr:create_app()"
workers = int((multiprocessing.cpu_count() * 2) + 1)
threads = 2
worker_class = "gthread"
preload_app = True
bind = ":8000"
# Heroku/Render style proxy headers
forwarded_allow_ips = "*"
# Scanner requests are short; a slow one is usually waiting on the DB lock
timeout = 30
keepalive = 75
# Access logging
accesslog = "-"
errorlog = "-"
loglevel = "info"
