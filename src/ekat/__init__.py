"""ekat: street and captcha harvester for the eKatastar Public Access portal."""

__version__ = "0.1.0"
