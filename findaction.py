import argparse
import logging
import os
import sys

from action_analyzer import analyze
from action_downloader import GITHUB_API_ROOT, Downloader


def sorted_usages(with_usages):
    """Most used parameters first, ties by name."""
    return sorted(with_usages.items(), key=lambda usage: (-usage[1], usage[0]))


def write_report(path, action_name, result, errors):
    """Write the usage report for one analysis run."""
    with open(path, 'w') as f:
        title = f"Usage Report for '{action_name}'"
        f.write(f"{title}\n")
        f.write(f"{'=' * len(title)}\n\n")
        f.write(f"Workflow files analyzed: {result.total_repositories}\n")
        f.write(f"Steps using this action: {result.total_steps}\n\n")

        if result.with_usages:
            f.write("Input Parameter Usage:\n")
            f.write("======================\n\n")
            width = max(len(param) for param in result.with_usages)
            for param, count in sorted_usages(result.with_usages):
                f.write(f"  {param.ljust(width)}  {count}\n")
        else:
            f.write("No input parameters were used.\n")

        if errors:
            f.write("\nDownload Errors:\n")
            f.write("================\n\n")
            for error in errors:
                f.write(f"  [{error.stage}] {error}\n")


def positive_int(value):
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Measure how a GitHub Action is used across workflow files')
    parser.add_argument('--action', help='Target GitHub Action to analyze', default='tj-actions/changed-files')
    parser.add_argument('--token', help='GitHub personal access token', default=os.environ.get('GITHUB_TOKEN'))
    parser.add_argument('--api-root', help='GitHub API root URL', default=os.environ.get('GITHUB_API_URL', GITHUB_API_ROOT))
    parser.add_argument('--output', help='Output file path', default='action_usage_report.txt')
    parser.add_argument('--max-workers', type=positive_int, help='Limit the number of concurrent downloads')
    parser.add_argument('--verbose', action='store_true', help='Log every request')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='%(message)s')

    if not args.token:
        print("Error: GitHub token is required. Set GITHUB_TOKEN environment variable or use --token.")
        return 1

    print(f"Searching for workflow files using {args.action}...")
    downloader = Downloader(api_root=args.api_root, max_workers=args.max_workers)
    configurations, error_stream = downloader.download_configurations(args.action, args.token)

    result = analyze(args.action, configurations)
    # both streams close together, so this does not block once analysis is done
    errors = list(error_stream)
    for error in errors:
        print(f"Error ({error.stage}): {error}")

    write_report(args.output, args.action, result, errors)

    print(f"\nScan complete! Report written to {args.output}")
    print(f"Found {result.total_steps} steps using {args.action} across {result.total_repositories} workflow files")
    return 2 if errors else 0


if __name__ == "__main__":
    sys.exit(main())
