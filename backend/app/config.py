# App version
APP_VERSION = "0.3.0"
SERVICE_NAME = "trip-deposits"

