"""
Command line entry point.

    autobackup [backup]                     Back up every configured database
    autobackup decrypt IN OUT [--decompress]
    autobackup generate-key
"""

import sys
import signal
import logging
import argparse
import threading

from autobackup import __version__, configure_logging
from autobackup.config import get_input, load_config
from autobackup.errors import BackupError, ConfigurationError
from autobackup.backup import CancelContext, run_backups
from autobackup.backup.compression import GzipCompressor
from autobackup.utils.crypto import AESEncryptor, decode_key, generate_key
from autobackup.utils.streams import FileStream


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def install_signal_handlers(context: CancelContext):
    """
    Cancel the run on SIGINT or SIGTERM.

    The handler runs on the main thread, which may hold the context lock, so
    cancel() runs on its own thread.
    """

    def cancel(signum):
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling backup")
        context.cancel()

    def handle(signum, frame):
        threading.Thread(target=cancel, args=(signum,), name='cancel', daemon=True).start()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def cmd_backup(args) -> int:
    try:
        config = load_config()
    except ConfigurationError as e:
        configure_logging(get_input('log_level') or 'INFO')
        logger.error(str(e))
        return EXIT_CONFIG

    configure_logging(config.log_level, config.log_file)

    context = CancelContext()
    install_signal_handlers(context)

    summaries = run_backups(config, context=context)

    if context.is_cancelled or any(not s.success for s in summaries):
        return EXIT_FAILED
    return EXIT_OK


def cmd_decrypt(args) -> int:
    configure_logging(get_input('log_level') or 'INFO')

    try:
        encoded_key = get_input('encryption_key')
        if not encoded_key:
            raise ConfigurationError('encryption_key', "ENCRYPTION_KEY is required to decrypt")
        encryptor = AESEncryptor(decode_key(encoded_key))
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_CONFIG

    try:
        with open(args.input, 'rb') as f_in:
            stream = encryptor.decrypt(FileStream(f_in))
            if args.decompress:
                stream = GzipCompressor().decompress(stream)

            with stream, open(args.output, 'wb') as f_out:
                for chunk in stream:
                    f_out.write(chunk)
    except (BackupError, OSError) as e:
        logger.error(f"Decryption failed: {e}")
        return EXIT_FAILED

    logger.info(f"Decrypted {args.input} -> {args.output}")
    return EXIT_OK


def cmd_generate_key(args) -> int:
    print(generate_key())
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='autobackup',
        description='Back up databases to S3-compatible object storage'
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.set_defaults(func=cmd_backup)

    subparsers = parser.add_subparsers(dest='command')

    backup_parser = subparsers.add_parser('backup', help='Back up all configured databases')
    backup_parser.set_defaults(func=cmd_backup)

    decrypt_parser = subparsers.add_parser('decrypt', help='Decrypt a backup artifact with ENCRYPTION_KEY')
    decrypt_parser.add_argument('input', help='Encrypted artifact (.enc)')
    decrypt_parser.add_argument('output', help='Destination file')
    decrypt_parser.add_argument('--decompress', action='store_true', help='Also gunzip the decrypted data')
    decrypt_parser.set_defaults(func=cmd_decrypt)

    key_parser = subparsers.add_parser('generate-key', help='Print a new base64 encryption key')
    key_parser.set_defaults(func=cmd_generate_key)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
