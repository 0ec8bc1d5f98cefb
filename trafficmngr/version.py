VERSION = "dev"