"""Navigator FLE Meta information.
   Navigator FLE encrypts document fields on the client before they reach the server.
"""
__title__ = 'navigator_fle'
__description__ = (
   'Navigator FLE: client-side automatic field-level encryption '
   'for document database drivers.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-fle'
