"""
Relay Workflow Language - Main Entry Point
Runs a workflow program's `main` against one input and prints the result as JSON
"""

import sys
import json
import logging
import argparse
from typing import Any, Optional

from backends import create_backend
from effects import COERCION_GRAMMARS, DispatcherConfig
from error_handling import RelayError, RelayParseError
from parsing import create_parser, pretty_print_cst
from runner import WorkflowRunner
from semantics import analyze_program, pretty_print_ast

VERSION = "Relay v0.1.0"


def create_arg_parser() -> argparse.ArgumentParser:
  """Create command line argument parser"""
  parser = argparse.ArgumentParser(
      description='Relay - run multi-agent workflow programs',
      formatter_class=argparse.RawDescriptionHelpFormatter,
      epilog="""
Examples:
  %(prog)s flow.relay --input "draft a tagline"             # Dry run with the echo backend
  %(prog)s flow.relay --input-file brief.json --json        # Input is JSON data
  %(prog)s flow.relay --backend scripted --responses r.json # Replay canned responses
  %(prog)s flow.relay --backend http --url http://localhost:8000/invoke
  %(prog)s --parse flow.relay                               # Show the CST
  %(prog)s --analyze flow.relay                             # Show the AST
        """
  )

  parser.add_argument('script', help='Relay program to run')

  source = parser.add_mutually_exclusive_group()
  source.add_argument('--input', help='Input passed to main (a string unless --json)')
  source.add_argument('--input-file', help='Read the input passed to main from a file')
  parser.add_argument('--json', action='store_true', help='Decode the input as JSON data')

  parser.add_argument('--parse', action='store_true', help='Parse file and show CST (for debugging)')
  parser.add_argument('--analyze', action='store_true', help='Parse and analyze file, show AST (for debugging)')

  parser.add_argument('--backend', choices=['echo', 'scripted', 'http'], default='echo',
                      help='Model backend (default: echo)')
  parser.add_argument('--responses', help='JSON array of responses for the scripted backend')
  parser.add_argument('--url', help='Gateway URL for the http backend')

  parser.add_argument('--timeout', type=float, default=30.0, help='Per-call timeout in seconds (default: 30)')
  parser.add_argument('--max-attempts', type=int, default=3, help='Attempts per model call (default: 3)')
  parser.add_argument('--backoff', type=float, default=0.5, help='Initial retry backoff in seconds (default: 0.5)')
  parser.add_argument('--grammar', choices=sorted(COERCION_GRAMMARS), default='json',
                      help='Grammar object() uses to read model responses (default: json)')
  parser.add_argument('--sequential', action='store_true', help='Evaluate let bindings one at a time')

  parser.add_argument('--debug', action='store_true', help='Enable debug logging for all stages')
  parser.add_argument('--version', action='version', version=VERSION)

  return parser


def read_input(args: argparse.Namespace) -> Any:
  """The input value for main, as plain Python data"""
  if args.input_file:
    with open(args.input_file, 'r', encoding='utf-8') as f:
      text = f.read()
  elif args.input is not None:
    text = args.input
  else:
    return None
  return json.loads(text) if args.json else text


def parse_file(script_path: str) -> None:
  """Parse a Relay program and show the CST"""
  cst_nodes = create_parser().parse_file(script_path)
  print(f"Parsed {len(cst_nodes)} top-level definitions:")
  print("=" * 50)
  for i, node in enumerate(cst_nodes, 1):
    print(f"\nDefinition {i}:")
    print(pretty_print_cst(node))


def analyze_file(script_path: str) -> None:
  """Parse and analyze a Relay program and show the AST"""
  cst_nodes = create_parser().parse_file(script_path)
  program = analyze_program(cst_nodes, script_path)
  for name, node in program['functions'].items():
    print(f"\nfun {name}:")
    print(pretty_print_ast(node))
  for node in program['values']:
    print(f"\nval {node['value']['name']}:")
    print(pretty_print_ast(node))


def run_script_file(args: argparse.Namespace) -> int:
  """Run main and print the JSON result; returns the exit status"""
  config = DispatcherConfig(
      timeout=args.timeout,
      max_attempts=args.max_attempts,
      backoff_base=args.backoff,
      coercion_grammar=args.grammar
  )
  backend = create_backend(args.backend, responses=args.responses, url=args.url)
  try:
    runner = WorkflowRunner(backend, config, parallel=not args.sequential)
    result = runner.run_file(args.script, read_input(args))
  finally:
    backend.close()
  print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
  return 0 if result.ok else 1


def main(argv: Optional[list] = None) -> int:
  """Main entry point"""
  args = create_arg_parser().parse_args(argv)

  logging.basicConfig(
      level=logging.DEBUG if args.debug else logging.WARNING,
      format="%(asctime)s %(levelname)s %(name)s: %(message)s"
  )

  try:
    if args.parse:
      parse_file(args.script)
    elif args.analyze:
      analyze_file(args.script)
    else:
      return run_script_file(args)
  except FileNotFoundError as e:
    print(f"Error: file '{e.filename}' not found", file=sys.stderr)
    print("  Hint: Check the file path and make sure the file exists", file=sys.stderr)
    return 1
  except PermissionError as e:
    print(f"Error: Permission denied reading '{e.filename}'", file=sys.stderr)
    return 1
  except json.JSONDecodeError as e:
    print(f"Error: input is not valid JSON: {e}", file=sys.stderr)
    return 1
  except RelayParseError as e:
    print(f"Parse error: {e}", file=sys.stderr)
    return 1
  except (RelayError, ValueError) as e:
    print(f"Error: {e}", file=sys.stderr)
    if args.debug:
      import traceback
      traceback.print_exc()
    return 1
  return 0


if __name__ == "__main__":
  sys.exit(main())
