#!/usr/bin/env python
# Copyright 2023 Pau Sanchez
# MIT LICENSE - read LICENSE file

#
# Subversion to git migration helper.
#
# There are two independent steps:
#
#  1. "authors" reads `svn log` and lists every author that ever committed,
#     so an authors file can be written for `git svn clone --authors-file`.
#
#  2. "migrate" runs `git svn clone` and then cleans up what git-svn leaves
#     behind: tags live as remote refs under refs/remotes/tags/ and branches
#     as remote refs under refs/remotes/. We turn those into real tags and
#     local branches, configure the local identity, optionally add a
#     .gitignore and optionally push everything to a new remote.
#
# This code assumes both `svn` and `git svn` are installed and on the PATH.
#
import os
import re
import sys
import json
import logging
import argparse
import contextlib
import subprocess
import urllib.parse

import git

KW_NONE = 'none'
KW_DEFAULT = 'default'

# Typical build artifacts, used when no ignore patterns are given
DEFAULT_IGNORE_PATTERNS = ['bin/', 'obj/', '*.suo', '*.user']

# r1234 | author | 2020-01-01 10:00:00 +0100 (Wed, 01 Jan 2020) | 3 lines
SVN_LOG_LINE_PATTERN = re.compile(r'^r\d+ \| [^|]+ \| [^|]+ \| \d+ lines?$')

# git-svn always names the trunk reference like this, no matter which path
# was passed with --trunk
TRUNK_ALIAS = 'trunk'

REMOTES_PREFIX = 'refs/remotes/'
TAGS_CATEGORY = 'tags/'

REMOTE_NAME = 'origin'
GITIGNORE_FILE = '.gitignore'
GITIGNORE_COMMIT_MESSAGE = 'Add .gitignore'

# keys accepted in the JSON file given with "migrate --config"
CONFIG_KEYS = [
  'user_name', 'user_email', 'authors_file', 'trunk', 'tags', 'branches',
  'ignore', 'remote_url', 'push', 'remote_username', 'svn_username', 'prefix'
]

REQUIRED_MIGRATE_KEYS = ['user_name', 'user_email', 'authors_file']

logger = logging.getLogger('migrate2git')


def extractAuthors(lines):
  """ Yield unique author names found in `svn log` output, sorted.

  Only the header line of each log entry is considered, the one that looks
  like "r<rev> | <author> | <date> | <n> line(s)". Anything else (commit
  messages, dashed separators, blank lines) is skipped silently.
  """
  authors = set()
  for line in lines:
    line = line.rstrip('\r\n')
    if not SVN_LOG_LINE_PATTERN.match(line):
      continue

    authors.add(line.split('|')[1].strip())

  for author in sorted(authors):
    yield author

def readSvnLog(svn_url, username = None):
  """ Run `svn log` on given url and return its output as a list of lines
  """
  cmd = ['svn', 'log']
  if username:
    cmd += ['--username', username]
  cmd.append(svn_url)

  # untranslated messages, otherwise "line(s)" might not match. Only the
  # message language changes, author names keep the native (utf-8) charset
  env = dict(os.environ)
  lc_all = env.pop('LC_ALL', None)
  if lc_all:
    env.setdefault('LC_CTYPE', lc_all)
  env['LC_MESSAGES'] = 'C'

  logger.debug("Running: %s", ' '.join(cmd))
  output = subprocess.check_output(cmd, env = env, text = True)
  return output.splitlines()

def readAuthorsMapping(file_path):
  """ Parse a git-svn authors file ("svnuser = Name <email>") into a dict
  """
  mapping = {}
  with open(file_path, 'rt', encoding = 'utf-8') as f:
    for line in f:
      line = line.strip()
      if not line or line.startswith('#') or '=' not in line:
        continue

      author, identity = line.split('=', 1)
      mapping[author.strip()] = identity.strip()

  return mapping

def authorsMappingLines(authors, email_domain = None, existing = None):
  """ Build authors file lines for every author.

  Authors already present in `existing` keep their mapping, the rest get a
  placeholder identity the operator is expected to edit.
  """
  existing = existing or {}
  domain = email_domain or 'example.com'

  lines = []
  for author in sorted(set(authors) | set(existing)):
    identity = existing.get(author, f'{author} <{author}@{domain}>')
    lines.append(f'{author} = {identity}')

  return lines

def structureSelector(trunk = None, tags = None, branches = None):
  """ Return the layout arguments for `git svn clone`.

  Each non-blank override adds its own flag, and when there are none at all
  the standard layout is assumed.
  """
  selector = []
  for flag, value in [('--trunk', trunk), ('--tags', tags), ('--branches', branches)]:
    if value and value.strip():
      selector += [flag, value.strip()]

  if not selector:
    selector = ['--stdlayout']

  return selector

def ignorePatterns(patterns):
  """ Expand the 'default' and 'none' keywords in a list of ignore patterns
  """
  if patterns is None:
    return list(DEFAULT_IGNORE_PATTERNS)

  if isinstance(patterns, str):
    patterns = [patterns]

  result = []
  for pattern in patterns:
    if pattern == KW_NONE:
      return []
    elif pattern == KW_DEFAULT:
      result += DEFAULT_IGNORE_PATTERNS
    elif pattern.strip():
      result.append(pattern.strip())

  return result

def remoteUrlWithUsername(remote_url, username):
  """ Embed username into http(s)/ssh urls that don't have one yet.

  Anything else (scp-like "git@host:path" urls, local paths) is returned
  as is.
  """
  if not username:
    return remote_url

  parts = urllib.parse.urlsplit(remote_url)
  if parts.scheme not in ('http', 'https', 'ssh') or parts.username:
    return remote_url

  user = urllib.parse.quote(username, safe = '')
  return urllib.parse.urlunsplit(parts._replace(netloc = f'{user}@{parts.netloc}'))

@contextlib.contextmanager
def pushd(path):
  """ Change into path, always going back to the original directory
  """
  original_path = os.getcwd()
  os.chdir(path)
  try:
    yield original_path
  finally:
    os.chdir(original_path)

def listReferences(repo, prefix):
  """ Return all reference names starting with prefix, as git sorts them.

  git only matches whole path components, so "refs/remotes/svn-" would find
  nothing: list the enclosing directory and filter here instead.
  """
  directory = prefix[:prefix.rfind('/') + 1]
  output = repo.git.for_each_ref('--format=%(refname)', directory)

  refs = [line.strip() for line in output.splitlines() if line.strip()]
  return [ref for ref in refs if ref.startswith(prefix)]

def reclassifyReferences(repo, prefix = '', trunk_alias = TRUNK_ALIAS):
  """ Turn git-svn remote refs into real tags and local branches.

  First every refs/remotes/<prefix>tags/<name> becomes tag <name>, then every
  remaining refs/remotes/<prefix><name> becomes branch <name>, except trunk
  which is just dropped (it's already the checked out branch). Source refs
  are deleted as soon as they've been converted.

  Errors are not handled here: whatever was converted before the failing
  ref stays converted.
  """
  remotes_prefix = REMOTES_PREFIX + prefix
  tags_prefix = remotes_prefix + TAGS_CATEGORY
  summary = {'tags': [], 'branches': [], 'removed': []}

  for ref in listReferences(repo, tags_prefix):
    name = ref[len(tags_prefix):]
    logger.info("Tagging: %s", name)

    repo.git.tag(name, ref)
    repo.git.update_ref('-d', ref)
    summary['tags'].append(name)
    summary['removed'].append(ref)

  for ref in listReferences(repo, remotes_prefix):
    name = ref[len(remotes_prefix):]

    if name == trunk_alias:
      logger.info("Dropping: %s", ref)
    else:
      logger.info("Branching: %s", name)
      repo.git.branch(name, ref)
      summary['branches'].append(name)

    repo.git.update_ref('-d', ref)
    summary['removed'].append(ref)

  return summary

def cloneSvnRepository(svn_url, authors_file, selector, prefix = '', username = None):
  """ Run `git svn clone` into the current directory, showing its output
  """
  cmd = ['git', 'svn', 'clone', svn_url]
  cmd += selector
  cmd += [f'--authors-file={authors_file}', f'--prefix={prefix}']
  if username:
    cmd.append(f'--username={username}')
  cmd.append('.')

  logger.debug("Running: %s", ' '.join(cmd))
  subprocess.check_call(cmd)

def configureIdentity(repo, user_name, user_email):
  repo.git.config('--local', 'user.name', user_name)
  repo.git.config('--local', 'user.email', user_email)

def commitIgnoreFile(repo, patterns):
  """ Append patterns to .gitignore (one per line) and commit it
  """
  ignore_path = os.path.join(repo.working_tree_dir, GITIGNORE_FILE)

  # don't glue the first pattern onto an unterminated last line
  missing_newline = False
  if os.path.isfile(ignore_path) and os.path.getsize(ignore_path) > 0:
    with open(ignore_path, 'rb') as f:
      f.seek(-1, os.SEEK_END)
      missing_newline = f.read(1) != b'\n'

  with open(ignore_path, 'a+t') as f:
    if missing_newline:
      f.write('\n')

    for pattern in patterns:
      f.write(pattern + '\n')

  repo.git.add(GITIGNORE_FILE)
  repo.git.commit('--no-verify', '-m', GITIGNORE_COMMIT_MESSAGE)

def pushToRemote(repo, remote_name = REMOTE_NAME):
  repo.git.push(remote_name, '--all')
  repo.git.push(remote_name, '--tags')

def migrate(
  svn_url,
  target_path,
  user_name,
  user_email,
  authors_file,
  trunk = None,
  tags = None,
  branches = None,
  ignore = None,
  remote_url = None,
  push = False,
  remote_username = None,
  svn_username = None,
  prefix = ''
):
  """
  Clone svn_url into target_path with git-svn and leave a clean git repo
  behind: tags and branches instead of remote refs, local identity set,
  optional .gitignore committed, and optionally pushed to remote_url.

  Any failing tool stops the whole migration (the exception goes up), but
  the original working directory is restored in every case.
  """
  # relative to where we are now, we are about to chdir
  authors_file = os.path.abspath(authors_file)
  if remote_url and os.path.exists(remote_url):
    remote_url = os.path.abspath(remote_url)
  patterns = ignorePatterns(ignore)

  os.makedirs(target_path, exist_ok = True)

  with pushd(target_path):
    selector = structureSelector(trunk, tags, branches)

    logger.info("Cloning %s into %s", svn_url, target_path)
    cloneSvnRepository(svn_url, authors_file, selector, prefix, svn_username)

    repo = git.Repo('.')

    logger.info("Converting remote refs into tags and branches")
    summary = reclassifyReferences(repo, prefix)
    logger.info(
      "  %d tag(s), %d branch(es), %d remote ref(s) removed",
      len(summary['tags']), len(summary['branches']), len(summary['removed'])
    )

    logger.info("Setting identity: %s <%s>", user_name, user_email)
    configureIdentity(repo, user_name, user_email)

    if patterns:
      logger.info("Committing %s: %s", GITIGNORE_FILE, ', '.join(patterns))
      commitIgnoreFile(repo, patterns)

    if remote_url:
      url = remoteUrlWithUsername(remote_url, remote_username)
      logger.info("Adding remote %s: %s", REMOTE_NAME, url)
      repo.git.remote('add', REMOTE_NAME, url)

      if push:
        logger.info("Pushing all branches and tags to %s", REMOTE_NAME)
        pushToRemote(repo)

    elif push:
      logger.warning("WARN: --push given without --remote-url, nothing pushed")

  return True

def mainAuthors(svn_url, username, output_file, email_domain):
  """ Main entry point for listing authors
  """
  authors = extractAuthors(readSvnLog(svn_url, username))

  if not output_file:
    for author in authors:
      print (author)
    return True

  existing = {}
  if os.path.exists(output_file):
    existing = readAuthorsMapping(output_file)

  lines = authorsMappingLines(authors, email_domain, existing)

  logger.info("Writing authors file: %s", output_file)
  with open(output_file, 'wt', encoding = 'utf-8') as f:
    f.write('\n'.join(lines) + '\n')

  return True

def loadConfig(config_file):
  """ Read migrate defaults from a JSON config file, ignoring unknown keys
  """
  with open(config_file, 'rt') as f:
    data = json.load(f)

  unknown = sorted(set(data) - set(CONFIG_KEYS))
  if unknown:
    logger.warning("WARN: Ignoring unknown config keys: %s", ', '.join(unknown))

  return {k: v for k, v in data.items() if k in CONFIG_KEYS}

def migrateOptions(args, parser):
  """ Merge --config file values with command line args (command line wins)
  """
  options = {}
  if args.config:
    options.update(loadConfig(args.config))

  for key in CONFIG_KEYS:
    value = getattr(args, key, None)
    if value is not None and value is not False:
      options[key] = value

  missing = [k for k in REQUIRED_MIGRATE_KEYS if not options.get(k)]
  if missing:
    parser.error("missing required options: " + ', '.join(
      '--' + k.replace('_', '-') for k in missing
    ))

  return options

def setupLogging(verbose, debug):
  level = logging.WARNING
  if verbose:
    level = logging.INFO
  if debug:
    level = logging.DEBUG

  logging.basicConfig(format = "%(message)s", stream = sys.stderr)
  logger.setLevel(level)

def buildParser():
  parser = argparse.ArgumentParser(
    prog='migrate2git',
    formatter_class=argparse.RawTextHelpFormatter,
    description="""
Migrate a Subversion repository to git using git-svn. List the svn authors
first to build an authors file, then migrate using that authors file.
    """,
    epilog="""
Examples:
  $ migrate2git authors https://svn.example.com/repo > authors.txt
  $ migrate2git authors --output authors.txt https://svn.example.com/repo
  $ migrate2git migrate --user-name "Jane Doe" --user-email jane@example.com \\
      --authors-file authors.txt https://svn.example.com/repo my-repo
    """
  )

  subparsers = parser.add_subparsers(
    dest='command',
    required = True,
    help='sub-commands help'
  )

  parser_authors = subparsers.add_parser('authors', help='Lists unique svn authors, sorted, one per line (or writes a git-svn authors file with --output)')
  parser_migrate = subparsers.add_parser('migrate', help='Clones the svn repository with git-svn and turns remote refs into tags and branches')

  for p in [parser_authors, parser_migrate]:
    p.add_argument('-v', '--verbose', action='store_true')
    p.add_argument('--debug', action='store_true', help="Show every command being run")
    p.add_argument('svn_url')

  parser_authors.add_argument('--username', default=None, help="Subversion username")
  parser_authors.add_argument('--output', default='', help="Write (or update) a git-svn authors file instead of printing names")
  parser_authors.add_argument('--email-domain', default=None, help="Domain used for placeholder emails in the authors file")

  parser_migrate.add_argument('target_path')
  parser_migrate.add_argument('--config', default='', help="JSON file with default values for any of the options below")
  parser_migrate.add_argument('--user-name', dest='user_name', help="Local git user.name")
  parser_migrate.add_argument('--user-email', dest='user_email', help="Local git user.email")
  parser_migrate.add_argument('--authors-file', dest='authors_file', help="git-svn authors mapping file")
  parser_migrate.add_argument('--trunk', help="Trunk path, relative to the svn url")
  parser_migrate.add_argument('--tags', help="Tags path, relative to the svn url")
  parser_migrate.add_argument('--branches', help="Branches path, relative to the svn url")
  parser_migrate.add_argument('--ignore', nargs='*', default=None, help=f"Patterns for .gitignore ('{KW_DEFAULT}': {' '.join(DEFAULT_IGNORE_PATTERNS)}, '{KW_NONE}': no .gitignore)")
  parser_migrate.add_argument('--remote-url', dest='remote_url', help=f"Remote to register as '{REMOTE_NAME}' (local paths are relative to the current directory)")
  parser_migrate.add_argument('--push', action='store_true', help="Push all branches and tags to --remote-url")
  parser_migrate.add_argument('--remote-username', dest='remote_username', help="Username embedded into an http(s)/ssh --remote-url")
  parser_migrate.add_argument('--svn-username', dest='svn_username', help="Subversion username for git svn clone")
  parser_migrate.add_argument('--prefix', default=None, help="git-svn remote ref prefix (default: none)")

  return parser

def main(argv = None):
  """
  Main application

  Parses args and runs the requested sub-command. Failing external tools
  end the program with their own exit status.
  """
  parser = buildParser()
  args = parser.parse_args(argv)

  setupLogging(args.verbose, args.debug)

  try:
    if args.command == 'authors':
      mainAuthors(
        args.svn_url,
        username = args.username,
        output_file = args.output,
        email_domain = args.email_domain
      )
    elif args.command == 'migrate':
      options = migrateOptions(args, parser)
      migrate(args.svn_url, args.target_path, **options)
      logger.info("Your git repo is ready: %s", os.path.abspath(args.target_path))

  except git.GitCommandError as e:
    logger.error("ERROR: %s", e)
    sys.exit(e.status if isinstance(e.status, int) and e.status else 1)

  except subprocess.CalledProcessError as e:
    logger.error("ERROR: %s", e)
    sys.exit(e.returncode or 1)

  # everything ok!
  sys.exit(0)

if __name__ == '__main__':
  main()
