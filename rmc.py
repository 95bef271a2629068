import os
import h5py
import dateutil.parser as dparser
import time as t
import numpy as np
from pyproj import Transformer
import pickle
import pandas as pd
import matplotlib.pyplot as plt
from collections import namedtuple
from multiprocessing import Pool
from functools import partial


#-----------------------------
# Criteria that a near-front depression must satisfy in order to be
# classified as a rampart-moat (R-M) structure

MOAT_H_LOWER_LIMIT = 2          # lower limit of the moat height (m), must be above sea level
MOAT_SEARCH_DIST = 2000         # along-track distance (m) from the front over which to search for a moat
RAMPART_MAX_SEARCH_DIST = 100   # along-track distance (m) from the front over which to search for
                                # a higher maximum than Point B
ATL06_SPACING = 20              # ATL06 segments are posted every 20 m

# ICESat-2 delta_time is seconds since the ATLAS SDP epoch
ATLAS_SDP_EPOCH = '2018-01-01T00:00:00Z'

PROFILE_KEYS = ('direction', 'cycle', 'h_b', 'index_b', 'x_dist_b',
                'h_ss', 'x', 'y', 'x_dist', 'x_atc', 'delta_time')
SAMPLE_KEYS = ('h_ss', 'x', 'y', 'x_dist', 'x_atc', 'delta_time')

MOAT_KEYS = ('moat_h', 'moat_index', 'moat_x', 'moat_y', 'moat_x_dist',
             'moat_x_atc', 'moat_delta_time')
RAMPART_KEYS = ('rampart_h', 'rampart_index', 'rampart_x', 'rampart_y',
                'rampart_x_dist', 'rampart_x_atc', 'rampart_delta_time')

# The arrays written to the output file, in this order
RM_KEYS = MOAT_KEYS + ('rm_flag',) + RAMPART_KEYS + ('track_node', 'cycle_number')

Profile = namedtuple('Profile', PROFILE_KEYS)
RMResult = namedtuple('RMResult', RM_KEYS + ('short_beam',))


def make_profile(row):
    '''
    Build a Profile from one front crossing record.

    row can be a dictionary, a pandas Series or anything else with the keys in
    PROFILE_KEYS. The per-sample sequences are converted to float arrays; the
    record itself is not checked here (see detect_one_profile).
    '''
    values = {key: row[key] for key in PROFILE_KEYS}
    for key in ('direction', 'cycle'):
        if isinstance(values[key], bytes):
            values[key] = values[key].decode()
    for key in SAMPLE_KEYS:
        values[key] = np.asarray(values[key], dtype=float)
    values['h_b'] = np.nan if values['h_b'] is None else float(values['h_b'])
    if not np.isnan(values['h_b']):
        try:
            values['index_b'] = int(values['index_b'])
        except (TypeError, ValueError):
            values['index_b'] = -1  # rejected later by check_profile
    return Profile(**values)


def empty_profile(row):
    '''
    Profile with no front for a record that could not be read. Direction and
    cycle are kept when they are there so the track metadata survives.
    '''
    def get(key, default):
        try:
            value = row[key]
        except (KeyError, IndexError, TypeError):
            return default
        return value.decode() if isinstance(value, bytes) else value

    empty = np.array([], dtype=float)
    return Profile(direction=get('direction', ''), cycle=get('cycle', None),
                   h_b=np.nan, index_b=-1, x_dist_b=np.nan,
                   h_ss=empty, x=empty, y=empty, x_dist=empty, x_atc=empty, delta_time=empty)


def read_profile(row):
    '''
    make_profile for one record of a batch: a record that cannot be read is
    reported and replaced by empty_profile, so it keeps its row in the output.
    '''
    if isinstance(row, Profile):
        return row
    try:
        return make_profile(row)
    except (KeyError, TypeError, ValueError) as e:
        print('Skipping malformed profile: %r' % (e,))
        return empty_profile(row)


def get_track_node(direction):
    '''
    1 = ascending track node, 2 = descending track node, 0 = unknown

    'A'/'D', or the words ascending/descending in any case.
    '''
    if isinstance(direction, bytes):
        direction = direction.decode()
    code = str(direction).strip()
    if code == 'A' or code.lower() == 'ascending':
        return 1
    elif code == 'D' or code.lower() == 'descending':
        return 2
    else:
        return 0


def get_traversal_sign(direction):
    '''
    Direction in which to walk away from Point B, moving from the ocean onto
    the ice shelf: +1 (increasing index) for descending tracks, -1 otherwise.

    Tracks with an unknown direction are walked like ascending tracks.
    '''
    if get_track_node(direction) == 2:
        return 1
    return -1


def get_cycle_number(cycle):
    try:
        return int(cycle)
    except (TypeError, ValueError):
        return 0


def walk_profile(profile, sign, search_dist, accept, stop_on_reject, spacing=ATL06_SPACING):
    '''
    Step away from Point B one ATL06 segment at a time and keep the best sample.

    INPUT:  profile        - Profile
            sign           - +1 or -1, direction of travel in index space
            search_dist    - along-track distance budget (m). Steps at or beyond this
                             distance from Point B are skipped, but the walk goes on.
            accept         - accept(h_new, h_best) -> True if h_new replaces the candidate
            stop_on_reject - end the walk at the first rejected sample
            spacing        - nominal sample spacing (m), sets the number of steps

    OUTPUT: (best_h, best_index, short_beam)
            short_beam is True when the walk ran off the end of the profile.
    '''
    best_h = profile.h_b
    best_index = profile.index_b
    n_samples = len(profile.h_ss)

    n_steps = int(search_dist / spacing) + 1
    for j in range(1, n_steps + 1):
        idx = profile.index_b + sign * j

        if idx < 0 or idx >= n_samples:
            return best_h, best_index, True

        # NaN distances fail the gate too
        if not abs(profile.x_dist_b - profile.x_dist[idx]) < search_dist:
            continue

        h_new = profile.h_ss[idx]
        if accept(h_new, best_h):
            best_h = h_new
            best_index = idx
        elif stop_on_reject:
            break

    return best_h, best_index, False


def find_moat(profile, sign, moat_h_lower_limit=MOAT_H_LOWER_LIMIT,
              moat_search_dist=MOAT_SEARCH_DIST, spacing=ATL06_SPACING):
    '''
    Search for the bottom of the first depression past Point B.

    Heights have to keep decreasing while staying above moat_h_lower_limit; the
    first sample that does not ends the search. Returns (h, index, short_beam);
    a moat was found if h differs from h_b.
    '''
    accept = lambda h_new, h_best: (h_new < h_best) and (h_new > moat_h_lower_limit)
    return walk_profile(profile, sign, moat_search_dist, accept,
                        stop_on_reject=True, spacing=spacing)


def find_rampart(profile, sign, rampart_max_search_dist=RAMPART_MAX_SEARCH_DIST,
                 spacing=ATL06_SPACING):
    '''
    Make sure Point B is really the rampart maximum by looking for the highest
    point within rampart_max_search_dist of the front. Returns (h, index, short_beam).
    '''
    accept = lambda h_new, h_best: h_new > h_best
    return walk_profile(profile, sign, rampart_max_search_dist, accept,
                        stop_on_reject=False, spacing=spacing)


def sample_fields(profile, index, keys):
    '''
    Height, index and location of one sample, named with keys (MOAT_KEYS or RAMPART_KEYS)
    '''
    values = (profile.h_ss[index], index, profile.x[index], profile.y[index],
              profile.x_dist[index], profile.x_atc[index], profile.delta_time[index])
    return {key: float(value) for key, value in zip(keys, values)}


def check_profile(profile):
    '''
    Returns a description of what is wrong with a profile that has a front, or None.
    '''
    n_samples = len(profile.h_ss)
    for key in SAMPLE_KEYS:
        if len(getattr(profile, key)) != n_samples:
            return '%s has %i samples, h_ss has %i' % (key, len(getattr(profile, key)), n_samples)
    if profile.index_b < 0 or profile.index_b >= n_samples:
        return 'index_b %i is outside a profile of %i samples' % (profile.index_b, n_samples)
    return None


def detect_one_profile(moat_h_lower_limit, moat_search_dist, rampart_max_search_dist,
                       verbose, profile):
    '''
    Run the R-M detection for a single ground track profile.

    The argument order lets functools.partial fix the criteria, so that the
    function can be handed to Pool.map.
    '''
    if not isinstance(profile, Profile):
        profile = read_profile(profile)

    output = dict.fromkeys(MOAT_KEYS + RAMPART_KEYS, np.nan)
    output['rm_flag'] = False
    output['track_node'] = get_track_node(profile.direction)
    output['cycle_number'] = get_cycle_number(profile.cycle)
    output['short_beam'] = False

    # Keep everything as NaN if no front was detected along this profile
    if np.isnan(profile.h_b):
        return RMResult(**output)

    problem = check_profile(profile)
    if problem is not None:
        print('Skipping malformed profile (cycle %s): %s' % (profile.cycle, problem))
        return RMResult(**output)

    if verbose and output['track_node'] == 0:
        print('unknown direction %r, searching as an ascending track' % (profile.direction,))

    sign = get_traversal_sign(profile.direction)

    #-----------------------------
    # moat: first depression within moat_search_dist of Point B
    moat_h, moat_index, short_beam = find_moat(profile, sign, moat_h_lower_limit, moat_search_dist)
    if short_beam and verbose:
        print('short beam')
    output['short_beam'] = short_beam

    if moat_h == profile.h_b:
        return RMResult(**output)

    output['rm_flag'] = True
    output.update(sample_fields(profile, moat_index, MOAT_KEYS))

    #-----------------------------
    # rampart: highest point within rampart_max_search_dist of Point B
    rampart_h, rampart_index, short_beam = find_rampart(profile, sign, rampart_max_search_dist)
    if short_beam and verbose:
        print('short beam')
    output['short_beam'] = output['short_beam'] or short_beam
    output.update(sample_fields(profile, rampart_index, RAMPART_KEYS))

    return RMResult(**output)


def aggregate_results(results):
    '''
    Collect the per-profile results into a single DataFrame, one row per profile
    in the same order as the input.
    '''
    columns = list(RMResult._fields)
    rm_obs = pd.DataFrame(list(results), columns=columns)
    rm_obs['rm_flag'] = rm_obs['rm_flag'].astype(bool)
    rm_obs['short_beam'] = rm_obs['short_beam'].astype(bool)
    rm_obs['track_node'] = rm_obs['track_node'].astype(int)
    rm_obs['cycle_number'] = rm_obs['cycle_number'].astype(int)
    return rm_obs


def split_results(rm_obs):
    '''
    Split the R-M observations into the moat-related and the rampart-related
    tables. Both keep the detection flag and the track metadata.
    '''
    shared = ['rm_flag', 'track_node', 'cycle_number']
    moat_obs = rm_obs[list(MOAT_KEYS) + shared].copy()
    rampart_obs = rm_obs[list(RAMPART_KEYS) + shared].copy()
    return moat_obs, rampart_obs


def detect_rm_features(front_crossing_data,
                       moat_h_lower_limit=MOAT_H_LOWER_LIMIT,
                       moat_search_dist=MOAT_SEARCH_DIST,
                       rampart_max_search_dist=RAMPART_MAX_SEARCH_DIST,
                       nproc=1, verbose=False):
    '''
    rmc.detect_rm_features

    Search each ground track profile in which the ice front was detected for a
    rampart-moat structure, moving from the ocean onto the ice shelf.

    INPUT: front_crossing_data, either a pandas DataFrame with one row per ground
            track profile or a list of dictionaries/Profiles. The keys are
            defined in PROFILE_KEYS.
           nproc, number of worker processes. Profiles are independent, so with
            nproc > 1 they are spread over a multiprocessing Pool.

    OUTPUT: rm_obs, a DataFrame with one row per input profile (in input order)
            and the columns in RM_KEYS plus short_beam. Profiles without a front
            or without a moat are kept, with NaN in the moat/rampart columns.
    '''
    ttstart = t.perf_counter()

    if isinstance(front_crossing_data, pd.DataFrame):
        records = front_crossing_data.to_dict('records')
    else:
        records = list(front_crossing_data)
    profiles = [read_profile(p) for p in records]

    func = partial(detect_one_profile, moat_h_lower_limit, moat_search_dist,
                   rampart_max_search_dist, verbose)
    if nproc > 1:
        with Pool(nproc) as p:
            results = p.map(func, profiles)
    else:
        results = list(map(func, profiles))

    rm_obs = aggregate_results(results)

    print('Searched %i ground track profiles.' % len(rm_obs))
    print('Found %i rampart-moat structures (%i short beams).'
          % (rm_obs['rm_flag'].sum(), rm_obs['short_beam'].sum()))
    print('Time to detect R-M structures: ', t.perf_counter() - ttstart)

    return rm_obs


def rm_dimensions(rm_obs):
    '''
    Add the R-M height (dh_rm, rampart minus moat height) and width (dx_rm,
    along-track distance between rampart and moat). NaN where there is no R-M.
    '''
    rm_obs = rm_obs.copy()
    rm_obs['dh_rm'] = rm_obs['rampart_h'] - rm_obs['moat_h']
    rm_obs['dx_rm'] = (rm_obs['rampart_x_dist'] - rm_obs['moat_x_dist']).abs()
    return rm_obs


def add_lat_lon(rm_obs):
    '''
    Moat and rampart locations in lat-lon. x and y are polar stereographic (EPSG:3031).
    '''
    rm_obs = rm_obs.copy()
    transformer = Transformer.from_crs("EPSG:3031", "EPSG:4326")

    for feature in ('moat', 'rampart'):
        x = rm_obs[feature + '_x'].to_numpy(dtype=float)
        y = rm_obs[feature + '_y'].to_numpy(dtype=float)
        lat = np.full(len(x), np.nan)
        lon = np.full(len(x), np.nan)
        ok = np.isfinite(x) & np.isfinite(y)
        if ok.any():
            lat[ok], lon[ok] = transformer.transform(x[ok], y[ok])
        rm_obs[feature + '_lat'] = lat
        rm_obs[feature + '_lon'] = lon

    return rm_obs


def delta_time_to_datetime(delta_time):
    '''
    Convert ATL06 delta_time (s since the ATLAS SDP epoch) to timestamps.
    GPS time; leap seconds are not removed. NaN becomes NaT.
    '''
    epoch = pd.Timestamp(dparser.parse(ATLAS_SDP_EPOCH))
    return epoch + pd.to_timedelta(np.asarray(delta_time, dtype=float), unit='s')


def load_front_crossings(file_name, verbose=False):
    '''
    Read the front crossing data written by the ice front detection step.

    Two formats are understood:
        .pkl - a pickled DataFrame (or list of dictionaries), one row per profile
        .h5  - one HDF5 group per profile, with direction, cycle, h_b, index_b and
               x_dist_b as attributes and the per-sample arrays as datasets

    Returns a list of Profiles.
    '''
    ext = os.path.splitext(file_name)[1].lower()

    if ext in ('.pkl', '.pickle'):
        with open(file_name, 'rb') as handle:
            data = pickle.load(handle)
        if isinstance(data, pd.DataFrame):
            data = data.to_dict('records')
        return [read_profile(row) for row in data]

    if ext in ('.h5', '.hdf5'):
        profiles = []
        with h5py.File(file_name, mode='r') as fid:
            # groups are named by profile number, keep them in that order
            for name in sorted(fid.keys(), key=_group_order):
                group = fid[name]
                try:
                    row = {key: group.attrs[key] for key in PROFILE_KEYS[:5]}
                    for key in SAMPLE_KEYS:
                        row[key] = np.array(group[key][:])
                except KeyError as e:
                    # keep the row so results still line up with the profile numbers
                    print(e)
                    print("ERROR: Key error, %s/%s" % (file_name, name))
                    profiles.append(empty_profile(group.attrs))
                    continue
                profiles.append(read_profile(row))
                if verbose:
                    print('     Read profile %s' % name)
        return profiles

    raise ValueError('Unknown front crossing file type: %s' % file_name)


def _group_order(name):
    try:
        return (0, int(name), name)
    except ValueError:
        return (1, 0, name)


def save_rm_data(rm_obs, output_file_name, config=None):
    '''
    Write the R-M parameters to an HDF5 file, one dataset per parameter.

    Every dataset has one entry per ground track profile. config (a dictionary
    of the detection criteria) is stored in the file attributes.
    '''
    if config is None:
        config = {'moat_h_lower_limit': MOAT_H_LOWER_LIMIT,
                  'moat_search_dist': MOAT_SEARCH_DIST,
                  'rampart_max_search_dist': RAMPART_MAX_SEARCH_DIST}

    with h5py.File(output_file_name, mode='w') as fid:
        for key in RM_KEYS:
            if key == 'rm_flag':
                data = rm_obs[key].to_numpy(dtype=np.int8)
            elif key in ('track_node', 'cycle_number'):
                data = rm_obs[key].to_numpy(dtype=np.int32)
            else:
                data = rm_obs[key].to_numpy(dtype=float)
            fid.create_dataset(key, data=data)
        for key, value in config.items():
            fid.attrs[key] = value
        fid.attrs['profile_count'] = len(rm_obs)


def read_rm_data(file_name):
    '''
    Read an R-M file written by save_rm_data back into a DataFrame.
    '''
    with h5py.File(file_name, mode='r') as fid:
        rm_obs = pd.DataFrame({key: fid[key][:] for key in RM_KEYS})
    rm_obs['rm_flag'] = rm_obs['rm_flag'].astype(bool)
    return rm_obs


def plot_rm_profile(profile, result, ax=None):
    '''
    Plot a ground track profile with Point B, the moat and the rampart marked.
    '''
    if ax is None:
        fig, ax = plt.subplots()

    ax.plot(profile.x_dist, profile.h_ss, c='k', lw=1)

    if not np.isnan(profile.h_b):
        ax.scatter(profile.x_dist_b, profile.h_b, c='tab:blue', label='Point B', zorder=3)
    if result.rm_flag:
        ax.scatter(result.moat_x_dist, result.moat_h, c='tab:red', label='moat', zorder=3)
        ax.scatter(result.rampart_x_dist, result.rampart_h, c='tab:green', marker='^',
                   label='rampart', zorder=3)

    ax.set_xlabel('Along-track distance (m)')
    ax.set_ylabel('Height (m)')
    ax.set_title('cycle %i, track node %i' % (result.cycle_number, result.track_node))
    ax.legend()
    return ax
