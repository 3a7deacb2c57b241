import os

import git
import pytest


def makeSvnClone(path, remote_refs = ()):
  """ Build what `git svn clone` leaves behind: master checked out from trunk
  plus remote refs (relative to refs/remotes/) all pointing at HEAD.
  """
  os.makedirs(path, exist_ok = True)
  repo = git.Repo.init(path)
  repo.git.config('--local', 'user.name', 'svn')
  repo.git.config('--local', 'user.email', 'svn@example.com')
  repo.git.symbolic_ref('HEAD', 'refs/heads/master')

  with open(os.path.join(path, 'README'), 'wt') as f:
    f.write('imported from svn\n')
  repo.git.add('README')
  repo.git.commit('-m', 'Initial import')

  for ref in remote_refs:
    repo.git.update_ref('refs/remotes/' + ref, 'HEAD')

  return repo


def refNames(repo, prefix):
  output = repo.git.for_each_ref('--format=%(refname)', prefix)
  return [line for line in output.splitlines() if line]


@pytest.fixture
def svn_clone(tmp_path):
  """ A fresh clone with one tag, trunk and a feature branch """
  return makeSvnClone(
    str(tmp_path / 'clone'),
    ['trunk', 'feature-x', 'tags/v1.0']
  )


@pytest.fixture
def restore_cwd():
  cwd = os.getcwd()
  yield cwd
  os.chdir(cwd)
